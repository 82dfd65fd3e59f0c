"""
Credit metering for paid operations.

Gates every paid image generation with a check-reserve-charge sequence:

1. Cost - pricing table cost per unit times the unit count
2. Reserve - credits are held before the external call starts, so two
   concurrent requests cannot both spend the same balance
3. Settle - the reservation is charged on success and released on failure
   or cancellation; failed generations are never charged
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .errors import ValidationError
from .events import UsageEventRecorder
from .ledger import LedgerStore, Reservation
from .pricing import PricingTable
from credit_guard.storage.models import EventType

logger = logging.getLogger(__name__)

MAX_UNITS_PER_REQUEST = 10

T = TypeVar("T")


@dataclass(frozen=True)
class MeteringResult:
    """Outcome of a metered operation.

    Authorized results carry ``remaining`` and the operation's ``value``;
    unauthorized ones carry ``required`` and the ``balance`` that fell short.
    """
    authorized: bool
    cost: int
    remaining: Optional[int] = None
    required: Optional[int] = None
    balance: Optional[int] = None
    value: Any = None


@dataclass(frozen=True)
class BatchItemResult:
    """Result of one item in a metered batch."""
    item: Any
    success: bool
    value: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BatchMeteringResult:
    """Outcome of a metered batch; only successful items are charged."""
    authorized: bool
    cost_per_item: int
    credits_used: int = 0
    remaining: Optional[int] = None
    required: Optional[int] = None
    balance: Optional[int] = None
    results: List[BatchItemResult] = field(default_factory=list)

    @property
    def successes(self) -> int:
        return sum(1 for result in self.results if result.success)


def _require_unit_count(unit_count: int) -> None:
    if isinstance(unit_count, bool) or not isinstance(unit_count, int):
        raise ValidationError(f"unit_count must be an integer, got {unit_count!r}")
    if not 1 <= unit_count <= MAX_UNITS_PER_REQUEST:
        raise ValidationError(
            f"unit_count must be between 1 and {MAX_UNITS_PER_REQUEST}, got {unit_count}"
        )


class MeteringGate:
    """Decision point invoked around every costed operation."""

    def __init__(
        self,
        ledger: LedgerStore,
        pricing: PricingTable,
        recorder: UsageEventRecorder,
    ):
        self._ledger = ledger
        self._pricing = pricing
        self._recorder = recorder

    def check(self, user_id: str, model: str, unit_count: int = 1) -> MeteringResult:
        """Report whether the user can currently afford the operation.

        Read-only: nothing is reserved, so the answer can be stale by the
        time the operation runs.
        """
        _require_unit_count(unit_count)
        cost = self._pricing.calculate_cost(model, unit_count)
        record = self._ledger.get(user_id)
        if record.balance < cost:
            return MeteringResult(
                authorized=False, cost=cost, required=cost, balance=record.balance
            )
        return MeteringResult(authorized=True, cost=cost, remaining=record.balance - cost)

    def authorize_and_charge(
        self,
        user_id: str,
        model: str,
        unit_count: int,
        operation: Callable[[], T],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MeteringResult:
        """Run ``operation`` under a credit reservation.

        Args:
            user_id: Opaque user identifier
            model: Model identifier used for pricing
            unit_count: Number of units produced (1-10)
            operation: Paid external call; raises on failure
            metadata: Extra fields for the ``generated`` event

        Returns:
            Unauthorized MeteringResult if the balance is short (no mutation,
            no event); otherwise an authorized result with the operation's value

        Raises:
            ValidationError: If unit_count is out of range
            Exception: Whatever ``operation`` raised, after the reservation
                is released and a ``failed`` event is logged
        """
        _require_unit_count(unit_count)
        cost = self._pricing.calculate_cost(model, unit_count)
        reservation = self._ledger.reserve(user_id, cost)
        if reservation is None:
            balance = self._ledger.get(user_id).balance
            return MeteringResult(authorized=False, cost=cost, required=cost, balance=balance)

        try:
            value = operation()
        except Exception as e:
            self._ledger.release(reservation)
            logger.error("Metered operation failed for %s/%s: %s", user_id, model, e)
            self._recorder.record(EventType.FAILED, user_id, {"model": model, "error": str(e)})
            raise
        except BaseException:
            self._ledger.release(reservation)
            logger.warning("Metered operation cancelled for %s/%s", user_id, model)
            raise

        try:
            with self._ledger.settling(reservation) as (txn, record):
                self._recorder.record(EventType.GENERATED, user_id, {
                    **(metadata or {}),
                    "model": model,
                    "count": unit_count,
                    "cost": cost,
                }, txn=txn)
                self._recorder.record(EventType.USED, user_id, {
                    "credits": cost,
                    "reason": "image_generation",
                }, txn=txn)
        except BaseException:
            # Charge and events were rolled back together
            self._ledger.release(reservation)
            raise
        return MeteringResult(authorized=True, cost=cost, remaining=record.balance, value=value)

    def authorize_and_charge_batch(
        self,
        user_id: str,
        model: str,
        items: Sequence[Any],
        operation: Callable[[Any], T],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BatchMeteringResult:
        """Run ``operation`` once per item under a single reservation.

        Each item succeeds or fails independently. Only successful items are
        charged, summed into one ledger mutation when the batch ends; the
        unused part of the reservation is returned.
        """
        _require_unit_count(len(items))
        cost_per_item = self._pricing.cost_of(model)
        total = cost_per_item * len(items)
        reservation = self._ledger.reserve(user_id, total)
        if reservation is None:
            balance = self._ledger.get(user_id).balance
            return BatchMeteringResult(
                authorized=False, cost_per_item=cost_per_item, required=total, balance=balance
            )

        results: List[BatchItemResult] = []
        try:
            for item in items:
                try:
                    results.append(BatchItemResult(item=item, success=True, value=operation(item)))
                except Exception as e:
                    logger.error("Batch item failed for %s/%s: %s", user_id, model, e)
                    results.append(BatchItemResult(item=item, success=False, error=str(e)))
        finally:
            # Runs on cancellation too: items that already succeeded are still charged
            remaining = self._settle_batch(
                reservation, user_id, model, cost_per_item, results, metadata
            )

        successes = sum(1 for result in results if result.success)
        return BatchMeteringResult(
            authorized=True,
            cost_per_item=cost_per_item,
            credits_used=successes * cost_per_item,
            remaining=remaining,
            results=results,
        )

    def _settle_batch(
        self,
        reservation: Reservation,
        user_id: str,
        model: str,
        cost_per_item: int,
        results: List[BatchItemResult],
        metadata: Optional[Dict[str, Any]],
    ) -> int:
        successes = sum(1 for result in results if result.success)
        used = successes * cost_per_item
        try:
            with self._ledger.settling(reservation, used=used) as (txn, record):
                if used > 0:
                    self._recorder.record(EventType.USED, user_id, {
                        "credits": used,
                        "reason": "batch_generation",
                    }, txn=txn)
                if successes > 0:
                    self._recorder.record(EventType.GENERATED, user_id, {
                        **(metadata or {}),
                        "model": model,
                        "count": successes,
                        "cost": used,
                        "batch": True,
                    }, txn=txn)
        except BaseException:
            self._ledger.release(reservation)
            raise
        return record.balance
