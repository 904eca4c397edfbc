"""
Tests for the realtime layer.

Tests cover:
- PostgREST-style row filters
- ChangeFeed dispatch, release during dispatch, Redis consumption, reconnect
- RealtimeProvider subscriptions and local event bus
- TopicSubscription scoping (enabled/scope toggles, key changes)
- Typed topic builders for live views
- SSE row stream (ready event, rows, heartbeat, release on disconnect)
"""

from __future__ import annotations

import asyncio
import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.api.v1.realtime import row_event_stream
from app.core.events import (
    ChangeFeed,
    ConnectionStatus,
    SubscriptionConfig,
    build_change,
    change_channel,
    parse_filter,
)
from app.core.realtime import (
    RealtimeEvent,
    RealtimeEventType,
    RealtimeProvider,
    TopicSubscription,
)
from app.services.live_updates import (
    arcade_subscription,
    org_filter,
    org_retros_subscription,
    pr_radar_subscription,
    retro_subscription,
    standup_subscription,
)
from sprintforge_shared.schemas.common import ChangeEvent
from sprintforge_shared.schemas.realtime import PRInsightRow, RetroNoteRow, RetroRow


def _pr_row(org_id, **overrides) -> dict:
    row = {
        "id": str(uuid.uuid4()),
        "org_id": str(org_id),
        "repo": "acme/api",
        "number": 42,
        "status": "open",
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestRowFilters:
    def test_eq(self):
        f = parse_filter("org_id=eq.abc")
        assert f.matches({"org_id": "abc"}) is True
        assert f.matches({"org_id": "xyz"}) is False
        assert f.matches({}) is False

    def test_eq_compares_as_text(self):
        assert parse_filter("number=eq.42").matches({"number": 42}) is True

    def test_neq(self):
        f = parse_filter("status=neq.closed")
        assert f.matches({"status": "open"}) is True
        assert f.matches({"status": "closed"}) is False

    def test_in(self):
        f = parse_filter("status=in.(open, merged)")
        assert f.matches({"status": "merged"}) is True
        assert f.matches({"status": "closed"}) is False

    def test_is_null(self):
        f = parse_filter("deleted_at=is.null")
        assert f.matches({"deleted_at": None}) is True
        assert f.matches({}) is True
        assert f.matches({"deleted_at": "2026-01-01"}) is False

    def test_is_bool(self):
        assert parse_filter("passed=is.true").matches({"passed": True}) is True
        assert parse_filter("passed=is.true").matches({"passed": False}) is False

    @pytest.mark.parametrize("expr", ["org_id", "org_id=gt.1", "=eq.1", "x=in.1,2", "x=is.maybe"])
    def test_malformed(self, expr):
        with pytest.raises(ValueError):
            parse_filter(expr)

    def test_org_filter(self):
        org_id = uuid.uuid4()
        assert org_filter(org_id) == f"org_id=eq.{org_id}"


# ---------------------------------------------------------------------------
# ChangeFeed
# ---------------------------------------------------------------------------


class TestChangeFeedDispatch:
    def test_matches_table_event_and_filter(self, feed):
        received = []
        feed.open_channel("c1", [
            SubscriptionConfig(
                table="standups", event=ChangeEvent.INSERT,
                filter="org_id=eq.o1", callback=received.append,
            )
        ])

        feed.dispatch(build_change("standups", ChangeEvent.INSERT, new={"org_id": "o1"}))
        feed.dispatch(build_change("standups", ChangeEvent.INSERT, new={"org_id": "o2"}))
        feed.dispatch(build_change("standups", ChangeEvent.UPDATE, new={"org_id": "o1"}))
        feed.dispatch(build_change("retros", ChangeEvent.INSERT, new={"org_id": "o1"}))

        assert len(received) == 1
        assert received[0]["new"] == {"org_id": "o1"}

    def test_delete_matches_old_row(self, feed):
        received = []
        feed.open_channel("c1", [
            SubscriptionConfig(
                table="retro_notes", event=ChangeEvent.DELETE,
                filter="retro_id=eq.r1", callback=received.append,
            )
        ])
        feed.dispatch(build_change("retro_notes", ChangeEvent.DELETE, old={"id": "n1", "retro_id": "r1"}))
        assert len(received) == 1

    def test_wildcard_event(self, feed):
        received = []
        feed.open_channel("c1", [SubscriptionConfig(table="retros", callback=received.append)])
        for event in (ChangeEvent.INSERT, ChangeEvent.UPDATE, ChangeEvent.DELETE):
            feed.dispatch(build_change("retros", event, new={"id": "r"}))
        assert [c["type"] for c in received] == ["INSERT", "UPDATE", "DELETE"]

    def test_delivery_order(self, feed):
        order = []
        feed.open_channel("a", [SubscriptionConfig(table="t", callback=lambda c: order.append("a"))])
        feed.open_channel("b", [SubscriptionConfig(table="t", callback=lambda c: order.append("b"))])
        assert feed.dispatch(build_change("t", ChangeEvent.INSERT)) == 2
        assert order == ["a", "b"]

    def test_channel_released_mid_dispatch_not_invoked(self, feed):
        calls = []

        def release_b(change):
            calls.append("a")
            feed.close_channel("b")

        feed.open_channel("a", [SubscriptionConfig(table="t", callback=release_b)])
        feed.open_channel("b", [SubscriptionConfig(table="t", callback=lambda c: calls.append("b"))])

        feed.dispatch(build_change("t", ChangeEvent.INSERT))
        assert calls == ["a"]

    def test_failing_callback_does_not_block_others(self, feed):
        received = []

        def boom(change):
            raise RuntimeError("handler bug")

        feed.open_channel("a", [SubscriptionConfig(table="t", callback=boom)])
        feed.open_channel("b", [SubscriptionConfig(table="t", callback=received.append)])
        feed.dispatch(build_change("t", ChangeEvent.INSERT))
        assert len(received) == 1

    def test_duplicate_channel_rejected(self, feed):
        feed.open_channel("a", [])
        with pytest.raises(ValueError):
            feed.open_channel("a", [])

    def test_close_unknown_channel(self, feed):
        assert feed.close_channel("missing") is False

    def test_invalid_json_ignored(self, feed):
        received = []
        feed.open_channel("a", [SubscriptionConfig(table="t", callback=received.append)])
        feed._handle_message({"type": "pmessage", "data": "{not json"})
        feed._handle_message({"type": "psubscribe", "data": 1})
        assert received == []

    def test_invalid_filter_rejected_at_registration(self):
        with pytest.raises(ValueError):
            SubscriptionConfig(table="t", filter="org_id", callback=lambda c: None)


def _fake_redis(messages: list[dict]):
    pending = list(messages)

    async def get_message(ignore_subscribe_messages=True, timeout=None):
        if pending:
            return pending.pop(0)
        await asyncio.sleep(0.01)
        return None

    pubsub = MagicMock()
    pubsub.psubscribe = AsyncMock()
    pubsub.punsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.get_message = get_message
    redis = MagicMock()
    redis.pubsub.return_value = pubsub
    return redis, pubsub


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestChangeFeedConnection:
    @pytest.mark.asyncio
    async def test_consumes_pubsub_messages(self):
        change = build_change("standups", ChangeEvent.INSERT, new={"org_id": "o1"})
        redis, pubsub = _fake_redis([
            {"type": "pmessage", "channel": change_channel("standups"), "data": json.dumps(change)},
        ])
        feed = ChangeFeed(redis_factory=AsyncMock(return_value=redis))
        received = []
        feed.open_channel("a", [SubscriptionConfig(table="standups", callback=received.append)])

        await feed.start()
        await _wait_for(lambda: received)
        assert feed.status == ConnectionStatus.CONNECTED
        await feed.stop()

        pubsub.psubscribe.assert_awaited_once_with("sf:changes:*")
        pubsub.aclose.assert_awaited()
        assert feed.status == ConnectionStatus.DISCONNECTED
        # Registrations survive a stop
        assert feed.channel_count == 1

    @pytest.mark.asyncio
    async def test_reconnects_after_connection_error(self):
        redis, _ = _fake_redis([])
        factory = AsyncMock(side_effect=[RedisConnectionError("refused"), redis])
        feed = ChangeFeed(redis_factory=factory)
        statuses = []
        feed.on_status_change(statuses.append)

        with patch("app.core.events.RECONNECT_BASE_SECONDS", 0.01):
            await feed.start()
            await _wait_for(lambda: feed.status == ConnectionStatus.CONNECTED)
            await feed.stop()

        assert feed.reconnect_count == 1
        assert ConnectionStatus.ERROR in statuses

    @pytest.mark.asyncio
    async def test_reconnects_after_unexpected_error(self):
        redis, _ = _fake_redis([])
        factory = AsyncMock(side_effect=[RuntimeError("bad client state"), redis])
        feed = ChangeFeed(redis_factory=factory)

        with patch("app.core.events.RECONNECT_BASE_SECONDS", 0.01):
            await feed.start()
            await _wait_for(lambda: feed.status == ConnectionStatus.CONNECTED)
            await feed.stop()

        assert feed.reconnect_count == 1

    @pytest.mark.asyncio
    async def test_failing_status_listener_does_not_stop_consumer(self):
        redis, _ = _fake_redis([])
        feed = ChangeFeed(redis_factory=AsyncMock(return_value=redis))
        statuses = []
        feed.on_status_change(MagicMock(side_effect=RuntimeError("listener bug")))
        feed.on_status_change(statuses.append)

        await feed.start()
        await _wait_for(lambda: feed.status == ConnectionStatus.CONNECTED)
        await feed.stop()

        assert statuses == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.DISCONNECTED,
        ]
        assert feed.reconnect_count == 0


# ---------------------------------------------------------------------------
# RealtimeProvider
# ---------------------------------------------------------------------------


class TestRealtimeProvider:
    def test_subscribe_and_unsubscribe(self, provider, feed):
        sub_id = provider.subscribe("pr_radar_o1", [SubscriptionConfig(table="t", callback=print)])
        assert sub_id.startswith("pr_radar_o1_")
        assert provider.active_subscriptions == 1
        assert feed.channel_count == 1

        provider.unsubscribe(sub_id)
        assert provider.active_subscriptions == 0
        assert feed.channel_count == 0

    def test_unsubscribe_unknown_is_noop(self, provider):
        provider.unsubscribe("nope")
        assert provider.active_subscriptions == 0

    def test_subscription_ids_unique(self, provider):
        a = provider.subscribe("topic", [])
        b = provider.subscribe("topic", [])
        assert a != b
        assert provider.active_subscriptions == 2

    def test_unsubscribe_all(self, provider, feed):
        provider.subscribe("a", [])
        provider.subscribe("b", [])
        provider.unsubscribe_all()
        assert provider.active_subscriptions == 0
        assert feed.channel_count == 0

    def test_connection_status_follows_transport(self, provider):
        assert provider.connection_status == ConnectionStatus.DISCONNECTED
        assert provider.is_connected is False

    @pytest.mark.asyncio
    async def test_reconnect_delegates(self):
        transport = MagicMock()
        transport.reconnect = AsyncMock()
        await RealtimeProvider(transport).reconnect()
        transport.reconnect.assert_awaited_once()

    def test_event_bus(self, provider):
        seen = []
        remove = provider.add_event_listener(seen.append)
        event = RealtimeEvent(type=RealtimeEventType.PR_UPDATED, payload={"id": "x"})

        provider.broadcast(event)
        remove()
        provider.broadcast(event)

        assert seen == [event]

    def test_failing_listener_isolated(self, provider):
        seen = []

        def boom(event):
            raise RuntimeError("listener bug")

        provider.add_event_listener(boom)
        provider.add_event_listener(seen.append)
        provider.broadcast(RealtimeEvent(type=RealtimeEventType.STANDUP_POSTED, payload={}))
        assert len(seen) == 1


# ---------------------------------------------------------------------------
# TopicSubscription
# ---------------------------------------------------------------------------


class TestTopicSubscription:
    @pytest.fixture
    def received(self):
        return []

    @pytest.fixture
    def builder(self, received):
        def build(org_id):
            return f"standups_{org_id}", [
                SubscriptionConfig(
                    table="standups", event=ChangeEvent.INSERT,
                    filter=org_filter(org_id), callback=received.append,
                )
            ]

        return build

    def test_disabled_creates_nothing(self, provider, feed, builder):
        handle = TopicSubscription(provider, builder)
        assert handle.update("o1", enabled=False) is False
        assert feed.channel_count == 0

    @pytest.mark.parametrize("scope", [None, ""])
    def test_missing_scope_creates_nothing(self, provider, feed, builder, scope):
        handle = TopicSubscription(provider, builder)
        assert handle.update(scope) is False
        assert feed.channel_count == 0

    def test_toggle_false_true_false(self, provider, feed, builder, received):
        handle = TopicSubscription(provider, builder)
        handle.update("o1", enabled=False)
        handle.update("o1", enabled=True)
        assert feed.channel_count == 1

        feed.dispatch(build_change("standups", ChangeEvent.INSERT, new={"org_id": "o1"}))
        assert len(received) == 1

        handle.update("o1", enabled=False)
        assert feed.channel_count == 0
        assert provider.active_subscriptions == 0

        feed.dispatch(build_change("standups", ChangeEvent.INSERT, new={"org_id": "o1"}))
        assert len(received) == 1

    def test_same_scope_keeps_single_subscription(self, provider, feed, builder):
        handle = TopicSubscription(provider, builder)
        handle.update("o1")
        handle.update("o1")
        handle.update("o1")
        assert feed.channel_count == 1

    def test_scope_change_resubscribes(self, provider, feed, builder, received):
        handle = TopicSubscription(provider, builder)
        handle.update("o1")
        handle.update("o2")
        assert handle.topic_key == "standups_o2"
        assert feed.channel_count == 1

        feed.dispatch(build_change("standups", ChangeEvent.INSERT, new={"org_id": "o1"}))
        feed.dispatch(build_change("standups", ChangeEvent.INSERT, new={"org_id": "o2"}))
        assert [c["new"]["org_id"] for c in received] == ["o2"]

    def test_context_manager_releases(self, provider, feed, builder):
        with TopicSubscription(provider, builder) as handle:
            handle.update("o1")
            assert handle.active is True
        assert handle.active is False
        assert feed.channel_count == 0


# ---------------------------------------------------------------------------
# Typed topic builders
# ---------------------------------------------------------------------------


class TestLiveUpdateBuilders:
    def test_pr_radar_typed_rows(self, provider, feed):
        org_id = uuid.uuid4()
        added, updated, events = [], [], []
        provider.add_event_listener(events.append)
        handle = TopicSubscription(
            provider,
            pr_radar_subscription(
                on_pr_added=added.append, on_pr_updated=updated.append,
                notify=provider.broadcast,
            ),
        )
        handle.update(org_id)
        assert handle.topic_key == f"pr_radar_{org_id}"

        feed.dispatch(build_change("pr_insights", ChangeEvent.INSERT, new=_pr_row(org_id)))
        feed.dispatch(build_change("pr_insights", ChangeEvent.UPDATE, new=_pr_row(org_id, status="merged")))
        feed.dispatch(build_change("pr_insights", ChangeEvent.INSERT, new=_pr_row(uuid.uuid4())))

        assert len(added) == 1 and isinstance(added[0], PRInsightRow)
        assert updated[0].status.value == "merged"
        assert [e.type for e in events] == [RealtimeEventType.PR_UPDATED]

    def test_malformed_row_dropped(self, provider, feed):
        org_id = uuid.uuid4()
        added = []
        TopicSubscription(provider, pr_radar_subscription(on_pr_added=added.append)).update(org_id)

        feed.dispatch(build_change("pr_insights", ChangeEvent.INSERT, new={"org_id": str(org_id)}))
        assert added == []

    def test_standup_and_arcade_topics(self, provider, feed):
        org_id = uuid.uuid4()
        standups, runs = [], []
        TopicSubscription(provider, standup_subscription(standups.append)).update(org_id)
        TopicSubscription(provider, arcade_subscription(runs.append)).update(org_id)

        feed.dispatch(build_change("standups", ChangeEvent.INSERT, new={
            "id": str(uuid.uuid4()), "org_id": str(org_id), "member_id": str(uuid.uuid4()),
            "date": "2026-10-19", "today": ["review PRs"],
        }))
        feed.dispatch(build_change("arcade_runs", ChangeEvent.INSERT, new={
            "id": str(uuid.uuid4()), "org_id": str(org_id), "level_id": str(uuid.uuid4()),
            "member_id": str(uuid.uuid4()), "passed": True, "points_awarded": 50,
        }))

        assert standups[0].today == ["review PRs"]
        assert runs[0].points_awarded == 50

    def test_retro_board(self, provider, feed):
        retro_id = uuid.uuid4()
        added, deleted, retro_updates = [], [], []
        handle = TopicSubscription(
            provider,
            retro_subscription(
                on_note_added=added.append,
                on_note_deleted=deleted.append,
                on_retro_updated=retro_updates.append,
            ),
        )
        handle.update(retro_id)
        assert handle.topic_key == f"retro_{retro_id}"

        note_id = uuid.uuid4()
        feed.dispatch(build_change("retro_notes", ChangeEvent.INSERT, new={
            "id": str(note_id), "retro_id": str(retro_id),
            "column_key": "went_well", "text": "Shipped on time",
        }))
        feed.dispatch(build_change("retro_notes", ChangeEvent.DELETE, old={
            "id": str(note_id), "retro_id": str(retro_id),
        }))
        feed.dispatch(build_change("retros", ChangeEvent.UPDATE, new={
            "id": str(retro_id), "org_id": str(uuid.uuid4()), "title": "Sprint 12", "status": "voting",
        }))
        feed.dispatch(build_change("retros", ChangeEvent.UPDATE, new={
            "id": str(uuid.uuid4()), "org_id": str(uuid.uuid4()), "title": "Other", "status": "active",
        }))

        assert isinstance(added[0], RetroNoteRow)
        assert deleted == [note_id]
        assert len(retro_updates) == 1 and isinstance(retro_updates[0], RetroRow)
        assert retro_updates[0].status.value == "voting"

    def test_org_retros(self, provider, feed):
        org_id = uuid.uuid4()
        added = []
        handle = TopicSubscription(provider, org_retros_subscription(on_retro_added=added.append))
        handle.update(org_id)
        assert handle.topic_key == f"org_retros_{org_id}"

        feed.dispatch(build_change("retros", ChangeEvent.INSERT, new={
            "id": str(uuid.uuid4()), "org_id": str(org_id), "title": "Sprint 13",
        }))
        assert added[0].title == "Sprint 13"


# ---------------------------------------------------------------------------
# SSE row stream
# ---------------------------------------------------------------------------


class TestRowEventStream:
    @pytest.mark.asyncio
    async def test_ready_rows_and_release_on_disconnect(self, provider, feed):
        org_id = uuid.uuid4()
        disconnected = AsyncMock(return_value=False)
        stream = row_event_stream(provider, "pr_radar", org_id, disconnected)

        ready = await stream.__anext__()
        assert ready["event"] == "ready"
        assert json.loads(ready["data"]) == {"topic": f"pr_radar_{org_id}"}
        assert feed.channel_count == 1

        feed.dispatch(build_change("pr_insights", ChangeEvent.INSERT, new=_pr_row(org_id)))
        item = await stream.__anext__()
        assert item["event"] == "pr_added"
        assert json.loads(item["data"])["repo"] == "acme/api"

        disconnected.return_value = True
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert feed.channel_count == 0

    @pytest.mark.asyncio
    async def test_heartbeat_when_idle(self, provider, feed):
        stream = row_event_stream(
            provider, "standups", uuid.uuid4(), AsyncMock(return_value=False),
            heartbeat_interval=0.01,
        )
        await stream.__anext__()
        heartbeat = await stream.__anext__()
        assert heartbeat.comment == "heartbeat"

        await stream.aclose()
        assert feed.channel_count == 0

    @pytest.mark.asyncio
    async def test_unknown_module_endpoint(self, client, onboard, auth_headers):
        await onboard("a@x.com")
        resp = await client.get("/api/realtime/bogus/stream", headers=auth_headers("a@x.com"))
        assert resp.status_code == 404
