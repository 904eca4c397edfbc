"""
Realtime subscription layer on top of the change feed.

``RealtimeProvider`` owns named subscriptions against a transport and a
local event bus. ``TopicSubscription`` is the scoped handle views hold: it
keeps at most one physical subscription, re-registers when its scope
changes, and releases synchronously when disabled or closed.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

import structlog
from fastapi import Request

from app.core.events import ConnectionStatus, SubscriptionConfig

log = structlog.get_logger()


class RealtimeTransport(Protocol):
    @property
    def status(self) -> ConnectionStatus: ...

    def open_channel(self, channel_id: str, configs: Sequence[SubscriptionConfig]) -> None: ...

    def close_channel(self, channel_id: str) -> bool: ...

    async def reconnect(self) -> None: ...


class RealtimeEventType(str, Enum):
    RETRO_NOTE_ADDED = "retro_note_added"
    RETRO_NOTE_UPDATED = "retro_note_updated"
    RETRO_NOTE_DELETED = "retro_note_deleted"
    RETRO_VOTE_CAST = "retro_vote_cast"
    RETRO_STATUS_CHANGED = "retro_status_changed"
    PR_UPDATED = "pr_updated"
    STANDUP_POSTED = "standup_posted"
    ARCADE_RUN_COMPLETED = "arcade_run_completed"


@dataclass
class RealtimeEvent:
    """An app-level event re-broadcast to local listeners."""

    type: RealtimeEventType
    payload: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventListener = Callable[[RealtimeEvent], None]


class RealtimeProvider:
    """Named subscriptions plus a local event bus over one transport."""

    def __init__(self, transport: RealtimeTransport):
        self._transport = transport
        self._subscriptions: dict[str, str] = {}  # subscription_id -> channel name
        self._listeners: list[EventListener] = []

    # --- Connection ---

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._transport.status

    @property
    def is_connected(self) -> bool:
        return self._transport.status == ConnectionStatus.CONNECTED

    async def reconnect(self) -> None:
        await self._transport.reconnect()

    # --- Subscriptions ---

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, channel_name: str, configs: Sequence[SubscriptionConfig]) -> str:
        """Open a physical subscription. Returns its id."""
        subscription_id = f"{channel_name}_{uuid.uuid4().hex[:9]}"
        self._transport.open_channel(subscription_id, configs)
        self._subscriptions[subscription_id] = channel_name
        log.info(
            "realtime.subscribed",
            channel=channel_name,
            subscription_id=subscription_id,
            tables=sorted({c.table for c in configs}),
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        channel_name = self._subscriptions.pop(subscription_id, None)
        if channel_name is None:
            return
        self._transport.close_channel(subscription_id)
        log.info("realtime.unsubscribed", channel=channel_name, subscription_id=subscription_id)

    def unsubscribe_all(self) -> None:
        for subscription_id in list(self._subscriptions):
            self.unsubscribe(subscription_id)

    # --- Local event bus ---

    def broadcast(self, event: RealtimeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("realtime.listener_error", event_type=event.type.value)

    def add_event_listener(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove


TopicBuilder = Callable[[str], tuple[str, Sequence[SubscriptionConfig]]]


class TopicSubscription:
    """
    Scoped handle for one logical topic.

    ``builder(scope_id)`` returns ``(topic_key, configs)``. The handle is
    active iff ``enabled`` and a scope id are both present.
    """

    def __init__(self, provider: RealtimeProvider, builder: TopicBuilder):
        self._provider = provider
        self._builder = builder
        self._topic_key: Optional[str] = None
        self._subscription_id: Optional[str] = None

    @property
    def active(self) -> bool:
        return self._subscription_id is not None

    @property
    def topic_key(self) -> Optional[str]:
        return self._topic_key

    def update(self, scope_id: Any, enabled: bool = True) -> bool:
        """Bring the physical subscription in line with ``scope_id``/``enabled``.

        Returns whether the handle is active afterwards.
        """
        scope = str(scope_id) if scope_id else None
        if not (enabled and scope):
            self._release()
            return False

        topic_key, configs = self._builder(scope)
        if self._subscription_id is not None and topic_key == self._topic_key:
            return True

        self._release()
        self._subscription_id = self._provider.subscribe(topic_key, configs)
        self._topic_key = topic_key
        return True

    def close(self) -> None:
        self._release()

    def _release(self) -> None:
        if self._subscription_id is not None:
            self._provider.unsubscribe(self._subscription_id)
        self._subscription_id = None
        self._topic_key = None

    def __enter__(self) -> "TopicSubscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def get_realtime_provider(request: Request) -> RealtimeProvider:
    """FastAPI dependency: the provider created at startup."""
    provider = getattr(request.app.state, "realtime", None)
    if provider is None:
        raise RuntimeError("Realtime provider not initialised")
    return provider
