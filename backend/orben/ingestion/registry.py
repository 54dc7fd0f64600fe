"""Source registry: due-selection and per-source health policy.

Pure data and scheduling decisions. Nothing here performs I/O; the
scheduler loads sources from the store, asks this module which ones to
poll, and feeds poll outcomes back through ``next_health_state``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Collection, Dict, List, Optional

if TYPE_CHECKING:
    from orben.models.source import Source


HEALTHY = "healthy"
DEGRADED = "degraded"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class SourceSnapshot:
    """Immutable view of a Source row handed to one ingestion attempt."""

    id: uuid.UUID
    name: str
    slug: str
    type: str
    endpoint: Optional[str]
    enabled: bool
    poll_interval: timedelta
    last_polled_at: Optional[datetime] = None
    fail_count: int = 0
    health: str = HEALTHY
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, source: "Source") -> "SourceSnapshot":
        return cls(
            id=source.id,
            name=source.name,
            slug=source.slug,
            type=source.type,
            endpoint=source.endpoint,
            enabled=bool(source.enabled),
            poll_interval=timedelta(minutes=source.poll_interval_minutes),
            last_polled_at=as_utc(source.last_polled_at),
            fail_count=source.fail_count or 0,
            health=source.health or HEALTHY,
            config=dict(source.config or {}),
        )


def is_due(source: SourceSnapshot, now: datetime) -> bool:
    """A source is due when enabled and never polled or its interval elapsed."""
    if not source.enabled:
        return False
    if source.last_polled_at is None:
        return True
    return as_utc(now) - as_utc(source.last_polled_at) >= source.poll_interval


def select_due(
    sources: List[SourceSnapshot],
    now: datetime,
    pollable_types: Optional[Collection[str]] = None,
) -> List[SourceSnapshot]:
    """Filter sources down to those that should be polled this tick.

    Args:
        sources: Registry snapshot
        now: Tick time
        pollable_types: Source types with a registered fetcher; None allows all

    Returns:
        Due sources, oldest poll first
    """
    due = [
        s for s in sources
        if is_due(s, now) and (pollable_types is None or s.type in pollable_types)
    ]
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(due, key=lambda s: s.last_polled_at or epoch)


@dataclass(frozen=True)
class HealthTransition:
    fail_count: int
    health: str
    changed: bool
    ceiling_exceeded: bool


def next_health_state(
    fail_count: int,
    health: str,
    succeeded: bool,
    degraded_threshold: int,
    fail_ceiling: int,
) -> HealthTransition:
    """Advance the healthy/degraded state machine by one poll outcome.

    healthy -> degraded after ``degraded_threshold`` consecutive failures,
    degraded -> healthy on the next success. Degraded sources keep their
    normal schedule; the ceiling only flags the source for operators.
    """
    if succeeded:
        new_count = 0
        new_health = HEALTHY
    else:
        new_count = max(0, fail_count) + 1
        new_health = DEGRADED if new_count >= degraded_threshold else health or HEALTHY

    return HealthTransition(
        fail_count=new_count,
        health=new_health,
        changed=new_health != (health or HEALTHY),
        ceiling_exceeded=not succeeded and new_count > fail_ceiling,
    )
