"""
Row-change feed over Redis Pub/Sub.

Features:
- One pub/sub channel per table (``sf:changes:<table>``)
- PostgREST-style row filters (``org_id=eq.<id>``, ``neq``, ``in``, ``is``)
- Synchronous channel registration/release; dispatch skips released channels
- Automatic reconnection with exponential backoff
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog
from fastapi import Request
from redis.exceptions import RedisError

from app.core.config import get_settings
from app.core.redis import get_redis
from sprintforge_shared.schemas.common import ChangeEvent

log = structlog.get_logger()

# Configuration
CHANGES_CHANNEL_PREFIX = "sf:changes:"
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MULTIPLIER = 2.0
POLL_TIMEOUT_SECONDS = 1.0

ChangeCallback = Callable[[dict[str, Any]], None]
ChangePublisher = Callable[..., Awaitable[dict[str, Any]]]


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

def change_channel(table: str) -> str:
    return f"{CHANGES_CHANNEL_PREFIX}{table}"


def build_change(
    table: str,
    event_type: ChangeEvent,
    new: dict[str, Any] | None = None,
    old: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "schema": "public",
        "table": table,
        "type": ChangeEvent(event_type).value,
        "new": new or {},
        "old": old or {},
        "commit_timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def publish_change(
    table: str,
    event_type: ChangeEvent,
    new: dict[str, Any] | None = None,
    old: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Publish a row change to the table's channel."""
    change = build_change(table, event_type, new, old)
    redis = await get_redis()
    await redis.publish(change_channel(table), json.dumps(change, default=str))
    return change


def get_change_publisher(request: Request) -> Optional[ChangePublisher]:
    """FastAPI dependency: the publisher to use, or None when realtime is off."""
    publisher = getattr(request.app.state, "change_publisher", None)
    if publisher is not None:
        return publisher
    return publish_change if get_settings().realtime_enabled else None


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

_FILTER_OPS = ("eq", "neq", "in", "is")


@dataclass(frozen=True)
class RowFilter:
    """A single ``column=op.value`` predicate."""

    column: str
    op: str
    value: Any

    def matches(self, row: dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "is":
            return actual is None if self.value is None else actual is self.value
        if actual is None:
            return False
        if self.op == "eq":
            return str(actual) == self.value
        if self.op == "neq":
            return str(actual) != self.value
        return str(actual) in self.value  # "in"


def parse_filter(expr: str) -> RowFilter:
    """Parse ``column=op.value``. Raises ValueError for anything else."""
    column, sep, rest = expr.partition("=")
    op, dot, raw = rest.partition(".")
    if not sep or not dot or not column or op not in _FILTER_OPS:
        raise ValueError(f"Unsupported filter: {expr!r}")

    if op == "in":
        if not (raw.startswith("(") and raw.endswith(")")):
            raise ValueError(f"Malformed 'in' filter: {expr!r}")
        value: Any = frozenset(v.strip() for v in raw[1:-1].split(",") if v.strip())
    elif op == "is":
        lowered = raw.lower()
        if lowered not in ("null", "true", "false"):
            raise ValueError(f"Malformed 'is' filter: {expr!r}")
        value = {"null": None, "true": True, "false": False}[lowered]
    else:
        value = raw
    return RowFilter(column=column, op=op, value=value)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

@dataclass
class SubscriptionConfig:
    """One (table, event, filter, callback) listener."""

    table: str
    callback: ChangeCallback
    event: ChangeEvent = ChangeEvent.ALL
    filter: Optional[str] = None
    _row_filter: Optional[RowFilter] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.event = ChangeEvent(self.event)
        if self.filter:
            self._row_filter = parse_filter(self.filter)

    def matches(self, change: dict[str, Any]) -> bool:
        if change.get("table") != self.table:
            return False
        event_type = change.get("type")
        if self.event != ChangeEvent.ALL and event_type != self.event.value:
            return False
        if self._row_filter is None:
            return True
        row = change.get("old") if event_type == ChangeEvent.DELETE.value else change.get("new")
        return self._row_filter.matches(row or {})


class ChangeFeed:
    """
    Change-feed transport backed by Redis Pub/Sub.

    Channels are registered and released synchronously; a released channel
    never sees another callback, even for messages already received.
    """

    def __init__(self, redis_factory: Callable[[], Awaitable[Any]] = get_redis):
        self._redis_factory = redis_factory
        self._channels: dict[str, list[SubscriptionConfig]] = {}
        self._status = ConnectionStatus.DISCONNECTED
        self._status_listeners: list[Callable[[ConnectionStatus], None]] = []
        self._running = False
        self._task: asyncio.Task | None = None
        self._reconnect_count = 0

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    def on_status_change(self, listener: Callable[[ConnectionStatus], None]) -> None:
        self._status_listeners.append(listener)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                log.exception("changefeed.status_listener_failed", status=status.value)

    # --- Registration ---

    def open_channel(self, channel_id: str, configs: Sequence[SubscriptionConfig]) -> None:
        if channel_id in self._channels:
            raise ValueError(f"Channel already open: {channel_id}")
        self._channels[channel_id] = list(configs)

    def close_channel(self, channel_id: str) -> bool:
        return self._channels.pop(channel_id, None) is not None

    # --- Dispatch ---

    def dispatch(self, change: dict[str, Any]) -> int:
        """Deliver one change to every matching listener. Returns the number invoked."""
        delivered = 0
        for channel_id in list(self._channels):
            configs = self._channels.get(channel_id)
            if configs is None:
                # Released by an earlier callback in this dispatch
                continue
            for config in configs:
                if channel_id not in self._channels:
                    break
                if not config.matches(change):
                    continue
                delivered += 1
                try:
                    config.callback(change)
                except Exception:
                    log.exception(
                        "changefeed.callback_error",
                        channel=channel_id,
                        table=config.table,
                        event=change.get("type"),
                    )
        return delivered

    def _handle_message(self, message: dict[str, Any]) -> None:
        if message.get("type") not in ("message", "pmessage"):
            return
        try:
            change = json.loads(message["data"])
        except (TypeError, ValueError):
            log.warning("changefeed.parse_error", data=str(message.get("data"))[:200])
            return
        self.dispatch(change)

    # --- Connection lifecycle ---

    async def start(self) -> None:
        """Start the listener loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._listen_loop())

    async def stop(self) -> None:
        """Stop listening. Registered channels are kept for a later start()."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_status(ConnectionStatus.DISCONNECTED)
        log.info("changefeed.stopped")

    async def reconnect(self) -> None:
        await self.stop()
        await self.start()

    async def _listen_loop(self) -> None:
        backoff = RECONNECT_BASE_SECONDS

        while self._running:
            try:
                await self._consume()
                backoff = RECONNECT_BASE_SECONDS
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as exc:
                self._set_status(ConnectionStatus.ERROR)
                log.warning("changefeed.connection_lost", error=str(exc), backoff=backoff)
            except Exception:
                self._set_status(ConnectionStatus.ERROR)
                log.exception("changefeed.loop_error", backoff=backoff)

            if not self._running:
                break

            self._reconnect_count += 1
            log.info("changefeed.reconnecting", backoff=backoff, attempt=self._reconnect_count)
            await asyncio.sleep(backoff)
            backoff = min(backoff * RECONNECT_MULTIPLIER, RECONNECT_MAX_SECONDS)

    async def _consume(self) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        redis = await self._redis_factory()
        pubsub = redis.pubsub()
        await pubsub.psubscribe(f"{CHANGES_CHANNEL_PREFIX}*")
        self._set_status(ConnectionStatus.CONNECTED)
        log.info("changefeed.connected")
        try:
            while self._running:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=POLL_TIMEOUT_SECONDS
                )
                if message is not None:
                    self._handle_message(message)
        finally:
            self._set_status(ConnectionStatus.DISCONNECTED)
            await pubsub.punsubscribe()
            await pubsub.aclose()
