"""
Data models for storage layer.

Defines the persisted records and their JSON-compatible encodings.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


@dataclass(frozen=True)
class LedgerRecord:
    """Credit balance and lifetime counters for one user.

    ``reserved`` holds credits provisionally taken from ``balance`` by
    in-flight metered operations; it is zero whenever nothing is running.
    """
    user_id: str
    balance: int
    total_purchased: int
    total_used: int
    updated_at: datetime
    reserved: int = 0

    def __post_init__(self):
        """Validate counters are never negative."""
        if self.balance < 0:
            raise ValueError("balance cannot be negative")
        if self.total_purchased < 0:
            raise ValueError("total_purchased cannot be negative")
        if self.total_used < 0:
            raise ValueError("total_used cannot be negative")
        if self.reserved < 0:
            raise ValueError("reserved cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance": self.balance,
            "total_purchased": self.total_purchased,
            "total_used": self.total_used,
            "reserved": self.reserved,
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerRecord":
        return cls(
            user_id=data["user_id"],
            balance=data["balance"],
            total_purchased=data["total_purchased"],
            total_used=data["total_used"],
            reserved=data.get("reserved", 0),
            updated_at=_parse_time(data["updated_at"]),
        )


class PaymentStatus(Enum):
    """Lifecycle of a purchase attempt."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentRecord:
    """One purchase attempt, keyed by the processor's checkout session."""
    id: str
    user_id: str
    tier_id: str
    credits: int
    amount_cents: int
    status: PaymentStatus
    external_session_id: str
    created_at: datetime
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tier_id": self.tier_id,
            "credits": self.credits,
            "amount_cents": self.amount_cents,
            "status": self.status.value,
            "external_session_id": self.external_session_id,
            "created_at": _format_time(self.created_at),
            "completed_at": _format_time(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            tier_id=data["tier_id"],
            credits=data["credits"],
            amount_cents=data["amount_cents"],
            status=PaymentStatus(data["status"]),
            external_session_id=data["external_session_id"],
            created_at=_parse_time(data["created_at"]),
            completed_at=_parse_time(data.get("completed_at")),
        )


class EventType(Enum):
    """Kinds of usage events."""
    GENERATED = "generated"
    FAILED = "failed"
    PURCHASED = "purchased"
    USED = "used"
    EXPORTED = "exported"
    PROMPT_USED = "prompt_used"


@dataclass(frozen=True)
class UsageEvent:
    """Immutable usage event.

    Append-only: once written, events are never modified, only evicted
    when the log exceeds its retention count.
    """
    id: str
    type: EventType
    user_id: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "user_id": self.user_id,
            "timestamp": _format_time(self.timestamp),
            "metadata": dict(self.metadata),
        }
