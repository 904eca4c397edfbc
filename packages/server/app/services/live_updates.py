"""
Typed topic builders for the live views (PR radar, standups, arcade, retro).

Each builder returns a function ``scope_id -> (topic_key, configs)`` for use
with ``TopicSubscription``. Row payloads are decoded into their row models
before handlers see them; rows that fail to decode are logged and dropped.
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ValidationError

from app.core.events import SubscriptionConfig
from app.core.realtime import RealtimeEvent, RealtimeEventType, TopicBuilder
from sprintforge_shared.schemas.common import ChangeEvent
from sprintforge_shared.schemas.realtime import (
    ArcadeRunRow,
    PRInsightRow,
    RetroNoteRow,
    RetroRow,
    StandupRow,
    decode_row,
)

log = structlog.get_logger()

RowHandler = Callable[[Any], None]
IdHandler = Callable[[uuid.UUID], None]
Notify = Callable[[RealtimeEvent], None]


def org_filter(org_id: Any) -> str:
    return f"org_id=eq.{org_id}"


def _on_row(
    table: str,
    handler: RowHandler,
    *,
    announce: Optional[RealtimeEventType] = None,
    notify: Optional[Notify] = None,
) -> Callable[[dict[str, Any]], None]:
    def callback(change: dict[str, Any]) -> None:
        try:
            row = decode_row(table, change.get("new") or {})
        except ValidationError as exc:
            log.warning("realtime.bad_row", table=table, errors=exc.error_count())
            return
        handler(row)
        if announce is not None and notify is not None:
            notify(RealtimeEvent(type=announce, payload=row))

    return callback


def _on_delete(
    table: str,
    handler: IdHandler,
    *,
    announce: Optional[RealtimeEventType] = None,
    notify: Optional[Notify] = None,
) -> Callable[[dict[str, Any]], None]:
    # Deleted rows may only carry their primary key
    def callback(change: dict[str, Any]) -> None:
        raw_id = (change.get("old") or {}).get("id")
        try:
            row_id = uuid.UUID(str(raw_id))
        except ValueError:
            log.warning("realtime.bad_row", table=table, id=raw_id)
            return
        handler(row_id)
        if announce is not None and notify is not None:
            notify(RealtimeEvent(type=announce, payload={"id": str(row_id)}))

    return callback


# ---------------------------------------------------------------------------
# Org-scoped views
# ---------------------------------------------------------------------------

def pr_radar_subscription(
    on_pr_added: Optional[Callable[[PRInsightRow], None]] = None,
    on_pr_updated: Optional[Callable[[PRInsightRow], None]] = None,
    notify: Optional[Notify] = None,
) -> TopicBuilder:
    def build(org_id: str) -> tuple[str, list[SubscriptionConfig]]:
        configs = []
        if on_pr_added:
            configs.append(SubscriptionConfig(
                table="pr_insights",
                event=ChangeEvent.INSERT,
                filter=org_filter(org_id),
                callback=_on_row("pr_insights", on_pr_added),
            ))
        if on_pr_updated:
            configs.append(SubscriptionConfig(
                table="pr_insights",
                event=ChangeEvent.UPDATE,
                filter=org_filter(org_id),
                callback=_on_row(
                    "pr_insights", on_pr_updated,
                    announce=RealtimeEventType.PR_UPDATED, notify=notify,
                ),
            ))
        return f"pr_radar_{org_id}", configs

    return build


def standup_subscription(
    on_standup_posted: Callable[[StandupRow], None],
    notify: Optional[Notify] = None,
) -> TopicBuilder:
    def build(org_id: str) -> tuple[str, list[SubscriptionConfig]]:
        return f"standups_{org_id}", [
            SubscriptionConfig(
                table="standups",
                event=ChangeEvent.INSERT,
                filter=org_filter(org_id),
                callback=_on_row(
                    "standups", on_standup_posted,
                    announce=RealtimeEventType.STANDUP_POSTED, notify=notify,
                ),
            )
        ]

    return build


def arcade_subscription(
    on_run_completed: Callable[[ArcadeRunRow], None],
    notify: Optional[Notify] = None,
) -> TopicBuilder:
    def build(org_id: str) -> tuple[str, list[SubscriptionConfig]]:
        return f"arcade_{org_id}", [
            SubscriptionConfig(
                table="arcade_runs",
                event=ChangeEvent.INSERT,
                filter=org_filter(org_id),
                callback=_on_row(
                    "arcade_runs", on_run_completed,
                    announce=RealtimeEventType.ARCADE_RUN_COMPLETED, notify=notify,
                ),
            )
        ]

    return build


# ---------------------------------------------------------------------------
# Retro boards
# ---------------------------------------------------------------------------

def retro_subscription(
    on_note_added: Optional[Callable[[RetroNoteRow], None]] = None,
    on_note_updated: Optional[Callable[[RetroNoteRow], None]] = None,
    on_note_deleted: Optional[IdHandler] = None,
    on_retro_updated: Optional[Callable[[RetroRow], None]] = None,
    notify: Optional[Notify] = None,
) -> TopicBuilder:
    """Notes and status of a single retro board, scoped by retro id."""

    def build(retro_id: str) -> tuple[str, list[SubscriptionConfig]]:
        note_filter = f"retro_id=eq.{retro_id}"
        configs = []
        if on_note_added:
            configs.append(SubscriptionConfig(
                table="retro_notes",
                event=ChangeEvent.INSERT,
                filter=note_filter,
                callback=_on_row(
                    "retro_notes", on_note_added,
                    announce=RealtimeEventType.RETRO_NOTE_ADDED, notify=notify,
                ),
            ))
        if on_note_updated:
            configs.append(SubscriptionConfig(
                table="retro_notes",
                event=ChangeEvent.UPDATE,
                filter=note_filter,
                callback=_on_row(
                    "retro_notes", on_note_updated,
                    announce=RealtimeEventType.RETRO_NOTE_UPDATED, notify=notify,
                ),
            ))
        if on_note_deleted:
            configs.append(SubscriptionConfig(
                table="retro_notes",
                event=ChangeEvent.DELETE,
                filter=note_filter,
                callback=_on_delete(
                    "retro_notes", on_note_deleted,
                    announce=RealtimeEventType.RETRO_NOTE_DELETED, notify=notify,
                ),
            ))
        if on_retro_updated:
            configs.append(SubscriptionConfig(
                table="retros",
                event=ChangeEvent.UPDATE,
                filter=f"id=eq.{retro_id}",
                callback=_on_row(
                    "retros", on_retro_updated,
                    announce=RealtimeEventType.RETRO_STATUS_CHANGED, notify=notify,
                ),
            ))
        return f"retro_{retro_id}", configs

    return build


def org_retros_subscription(
    on_retro_added: Optional[Callable[[RetroRow], None]] = None,
    on_retro_updated: Optional[Callable[[RetroRow], None]] = None,
    on_retro_deleted: Optional[IdHandler] = None,
) -> TopicBuilder:
    """Retro list for an organization."""

    def build(org_id: str) -> tuple[str, list[SubscriptionConfig]]:
        configs = []
        if on_retro_added:
            configs.append(SubscriptionConfig(
                table="retros",
                event=ChangeEvent.INSERT,
                filter=org_filter(org_id),
                callback=_on_row("retros", on_retro_added),
            ))
        if on_retro_updated:
            configs.append(SubscriptionConfig(
                table="retros",
                event=ChangeEvent.UPDATE,
                filter=org_filter(org_id),
                callback=_on_row("retros", on_retro_updated),
            ))
        if on_retro_deleted:
            configs.append(SubscriptionConfig(
                table="retros",
                event=ChangeEvent.DELETE,
                filter=org_filter(org_id),
                callback=_on_delete("retros", on_retro_deleted),
            ))
        return f"org_retros_{org_id}", configs

    return build


# ---------------------------------------------------------------------------
# SSE streams
# ---------------------------------------------------------------------------

Emit = Callable[[str, BaseModel], None]

STREAM_MODULES = ("pr_radar", "standups", "arcade")


def stream_subscription(module: str, emit: Emit) -> TopicBuilder:
    """Topic builder that forwards a module's rows to ``emit(event_name, row)``.

    Raises KeyError for unknown modules.
    """
    if module == "pr_radar":
        return pr_radar_subscription(
            on_pr_added=lambda row: emit("pr_added", row),
            on_pr_updated=lambda row: emit("pr_updated", row),
        )
    if module == "standups":
        return standup_subscription(lambda row: emit("standup_posted", row))
    if module == "arcade":
        return arcade_subscription(lambda row: emit("run_completed", row))
    raise KeyError(module)
