"""
Usage event recording.

Appends events to the bounded log and keeps the analytics view current
in the same transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .analytics import (
    AnalyticsState,
    DailyAggregate,
    FunnelStats,
    SummaryStats,
    apply_event,
    compute_aggregates,
    funnel,
    summarize,
    top_models,
)
from .errors import ValidationError
from credit_guard.storage.models import EventType, UsageEvent, utcnow
from credit_guard.storage.repository import SQLiteStore, Transaction

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 10_000

ANALYTICS_KEY = "analytics:state"


@dataclass(frozen=True)
class HealthStatus:
    status: str
    total_events: int
    days_tracked: int
    last_updated: Optional[str]


@dataclass(frozen=True)
class EventPage:
    """One page of events, newest first."""
    events: List[UsageEvent]
    total: int
    has_more: bool


class UsageEventRecorder:
    """Append-only usage log with a materialized analytics view.

    The view covers exactly the retained events: when an append evicts old
    events the view is rebuilt from the log, otherwise the new event is
    folded in incrementally.
    """

    def __init__(
        self,
        store: SQLiteStore,
        retention: int = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ):
        if retention <= 0:
            raise ValueError("retention must be > 0")
        self._store = store
        self.retention = retention
        self._clock = clock

    def record(
        self,
        event_type: Union[EventType, str],
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        txn: Optional[Transaction] = None,
    ) -> UsageEvent:
        """Append an event and update the aggregates.

        Args:
            event_type: One of EventType (or its string value)
            user_id: Opaque user identifier
            metadata: Event-specific details
            txn: Existing transaction to join, so the event commits atomically
                with the caller's other writes

        Raises:
            ValidationError: If the event type is unknown
        """
        try:
            event_type = EventType(event_type)
        except ValueError:
            valid = [t.value for t in EventType]
            raise ValidationError(f"Unknown event type {event_type!r}; must be one of: {valid}")

        event = UsageEvent(
            id=f"evt_{uuid.uuid4().hex}",
            type=event_type,
            user_id=user_id,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
        )
        if txn is not None:
            self._append(txn, event)
        else:
            with self._store.transaction() as own_txn:
                self._append(own_txn, event)
        logger.debug("Recorded %s event for %s", event.type.value, user_id)
        return event

    def _append(self, txn: Transaction, event: UsageEvent) -> None:
        evicted = txn.append_event(event, retention=self.retention)
        if evicted:
            state = compute_aggregates(txn.fetch_events(newest_first=False))
        else:
            state = self._load_state(txn)
            apply_event(state, event)
        txn.write(ANALYTICS_KEY, state.to_dict())

    @staticmethod
    def _load_state(reader) -> AnalyticsState:
        data = reader.read(ANALYTICS_KEY)
        if data is None:
            return AnalyticsState()
        return AnalyticsState.from_dict(data)

    def state(self) -> AnalyticsState:
        return self._load_state(self._store)

    def replay(self) -> AnalyticsState:
        """Recompute the analytics view from the retained log and persist it."""
        with self._store.transaction() as txn:
            state = compute_aggregates(txn.fetch_events(newest_first=False))
            txn.write(ANALYTICS_KEY, state.to_dict())
        logger.info("Rebuilt analytics view from event log")
        return state

    def summary(self) -> SummaryStats:
        return summarize(self.state())

    def daily(self, days: int = 30) -> List[DailyAggregate]:
        """Daily aggregates for the last ``days`` tracked dates, oldest first."""
        if days <= 0:
            raise ValidationError("days must be > 0")
        state = self.state()
        dates = sorted(state.daily)[-days:]
        return [state.daily[date] for date in dates]

    def models(self) -> List[Tuple[str, int]]:
        return top_models(self.state())

    def funnel(self) -> FunnelStats:
        return funnel(self.state())

    def recent_events(self, limit: int = 50, offset: int = 0) -> EventPage:
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be > 0 and offset >= 0")
        total = self._store.count_events()
        events = self._store.fetch_events(limit=limit, offset=offset)
        return EventPage(events=events, total=total, has_more=offset + limit < total)

    def health(self) -> HealthStatus:
        state = self.state()
        return HealthStatus(
            status="healthy",
            total_events=self._store.count_events(),
            days_tracked=len(state.daily),
            last_updated=state.last_updated,
        )
