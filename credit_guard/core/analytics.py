"""
Usage analytics aggregation.

Derives daily counters, summary statistics and funnel metrics from the
usage event stream. Aggregates are a pure fold over events, so the view
maintained incrementally always equals the one rebuilt by replaying the log.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from credit_guard.storage.models import EventType, UsageEvent

TOP_MODEL_COUNT = 5


@dataclass
class DailyAggregate:
    """Counters for one UTC calendar date."""
    date: str
    generated: int = 0
    failed: int = 0
    credits_purchased: int = 0
    credits_used: int = 0
    revenue_cents: int = 0
    unique_users: Set[str] = field(default_factory=set)
    models_used: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "generated": self.generated,
            "failed": self.failed,
            "credits_purchased": self.credits_purchased,
            "credits_used": self.credits_used,
            "revenue_cents": self.revenue_cents,
            "unique_users": sorted(self.unique_users),
            "models_used": dict(self.models_used),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyAggregate":
        return cls(
            date=data["date"],
            generated=data["generated"],
            failed=data["failed"],
            credits_purchased=data["credits_purchased"],
            credits_used=data["credits_used"],
            revenue_cents=data["revenue_cents"],
            unique_users=set(data["unique_users"]),
            models_used=dict(data["models_used"]),
        )


@dataclass
class AnalyticsState:
    """Materialized view over the retained event log."""
    daily: Dict[str, DailyAggregate] = field(default_factory=dict)
    generated: int = 0
    failed: int = 0
    credits_purchased: int = 0
    credits_used: int = 0
    revenue_cents: int = 0
    users: Set[str] = field(default_factory=set)
    generators: Set[str] = field(default_factory=set)
    purchasers: Set[str] = field(default_factory=set)
    model_counts: Dict[str, int] = field(default_factory=dict)
    last_updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daily": {date: agg.to_dict() for date, agg in self.daily.items()},
            "generated": self.generated,
            "failed": self.failed,
            "credits_purchased": self.credits_purchased,
            "credits_used": self.credits_used,
            "revenue_cents": self.revenue_cents,
            "users": sorted(self.users),
            "generators": sorted(self.generators),
            "purchasers": sorted(self.purchasers),
            "model_counts": dict(self.model_counts),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalyticsState":
        return cls(
            daily={date: DailyAggregate.from_dict(agg) for date, agg in data["daily"].items()},
            generated=data["generated"],
            failed=data["failed"],
            credits_purchased=data["credits_purchased"],
            credits_used=data["credits_used"],
            revenue_cents=data["revenue_cents"],
            users=set(data["users"]),
            generators=set(data["generators"]),
            purchasers=set(data["purchasers"]),
            model_counts=dict(data["model_counts"]),
            last_updated=data.get("last_updated"),
        )


@dataclass(frozen=True)
class SummaryStats:
    """Global counters derived from the analytics state."""
    total_generated: int
    total_failed: int
    total_credits_purchased: int
    total_credits_used: int
    total_revenue_cents: int
    unique_users: int
    top_models: Tuple[Tuple[str, int], ...]
    conversion_rate: float
    avg_revenue_per_user: float
    last_updated: Optional[str]


@dataclass(frozen=True)
class FunnelStats:
    """User progression from first visit to generation to purchase."""
    total_users: int
    generating_users: int
    purchasing_users: int
    generation_rate: float
    purchase_rate: float
    purchase_rate_from_generators: float


def _int_metadata(metadata: Dict[str, Any], key: str, default: int = 0) -> int:
    value = metadata.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _percent(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0.0


def apply_event(state: AnalyticsState, event: UsageEvent) -> AnalyticsState:
    """Fold one event into ``state`` in place and return it.

    ``exported`` and ``prompt_used`` events only contribute to user counts.
    """
    date = event.timestamp.date().isoformat()
    daily = state.daily.get(date)
    if daily is None:
        daily = DailyAggregate(date=date)
        state.daily[date] = daily

    metadata = event.metadata
    if event.type == EventType.GENERATED:
        count = _int_metadata(metadata, "count", 1)
        daily.generated += count
        state.generated += count
        state.generators.add(event.user_id)
        model = metadata.get("model")
        if model:
            daily.models_used[model] = daily.models_used.get(model, 0) + count
            state.model_counts[model] = state.model_counts.get(model, 0) + count
    elif event.type == EventType.FAILED:
        daily.failed += 1
        state.failed += 1
    elif event.type == EventType.PURCHASED:
        credits = _int_metadata(metadata, "credits")
        amount = _int_metadata(metadata, "amount")
        daily.credits_purchased += credits
        state.credits_purchased += credits
        daily.revenue_cents += amount
        state.revenue_cents += amount
        state.purchasers.add(event.user_id)
    elif event.type == EventType.USED:
        credits = _int_metadata(metadata, "credits")
        daily.credits_used += credits
        state.credits_used += credits

    daily.unique_users.add(event.user_id)
    state.users.add(event.user_id)
    state.last_updated = event.timestamp.isoformat()
    return state


def compute_aggregates(events: Iterable[UsageEvent]) -> AnalyticsState:
    """Rebuild the analytics state from scratch, oldest event first."""
    state = AnalyticsState()
    for event in events:
        apply_event(state, event)
    return state


def top_models(state: AnalyticsState, limit: int = TOP_MODEL_COUNT) -> List[Tuple[str, int]]:
    """Most generated models; ties are broken by model id."""
    ranked = sorted(state.model_counts.items(), key=lambda item: (-item[1], item[0]))
    return ranked[:limit]


def summarize(state: AnalyticsState) -> SummaryStats:
    users = len(state.users)
    return SummaryStats(
        total_generated=state.generated,
        total_failed=state.failed,
        total_credits_purchased=state.credits_purchased,
        total_credits_used=state.credits_used,
        total_revenue_cents=state.revenue_cents,
        unique_users=users,
        top_models=tuple(top_models(state)),
        conversion_rate=_percent(len(state.purchasers), users),
        avg_revenue_per_user=state.revenue_cents / users if users else 0.0,
        last_updated=state.last_updated,
    )


def funnel(state: AnalyticsState) -> FunnelStats:
    users = len(state.users)
    generating = len(state.generators)
    purchasing = len(state.purchasers)
    return FunnelStats(
        total_users=users,
        generating_users=generating,
        purchasing_users=purchasing,
        generation_rate=_percent(generating, users),
        purchase_rate=_percent(purchasing, users),
        purchase_rate_from_generators=_percent(purchasing, generating),
    )
