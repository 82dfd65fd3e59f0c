"""
Per-user credit ledger.

Owns balances and lifetime counters. Every mutation of a user's record is
serialized by a per-user lock and applied inside a single store transaction,
so concurrent debits cannot lose updates and a balance never goes negative.

Invariant, for every record:
    balance + reserved == total_purchased - total_used + starter_balance
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import ContextManager, Iterator, Optional, Tuple

from .errors import ValidationError
from .locks import KeyedLocks
from credit_guard.storage.models import LedgerRecord, utcnow
from credit_guard.storage.repository import SQLiteStore, Transaction

logger = logging.getLogger(__name__)

DEFAULT_STARTER_BALANCE = 5

# Held credits older than this are assumed orphaned by a dead process
DEFAULT_RESERVATION_TTL = timedelta(minutes=15)

LEDGER_KEY_PREFIX = "ledger:"
RESERVATION_KEY_PREFIX = "reservation:"


@dataclass(frozen=True)
class Reservation:
    """Credits provisionally held for an in-flight operation."""
    id: str
    user_id: str
    amount: int


def _require_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Credit amount must be an integer, got {amount!r}")
    if amount < 0:
        raise ValidationError(f"Credit amount cannot be negative, got {amount}")


def _require_user(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id is required and cannot be empty")


class LedgerStore:
    """Credit balances keyed by user id.

    User ids are opaque and unauthenticated; the ledger trusts whatever id
    the boundary hands it.
    """

    def __init__(
        self,
        store: SQLiteStore,
        starter_balance: int = DEFAULT_STARTER_BALANCE,
        locks: Optional[KeyedLocks] = None,
    ):
        """Initialize the ledger.

        Args:
            store: Transactional key-value persistence
            starter_balance: Credits granted to a user on first sight
            locks: Lock registry, shared with collaborators that must
                serialize against ledger mutations
        """
        if starter_balance < 0:
            raise ValueError("starter_balance cannot be negative")
        self._store = store
        self.starter_balance = starter_balance
        self._locks = locks or KeyedLocks()

    def locked(self, user_id: str) -> ContextManager[None]:
        """Hold the user's ledger lock. Not reentrant."""
        return self._locks.hold(LEDGER_KEY_PREFIX + user_id)

    @contextmanager
    def _mutation(self, user_id: str) -> Iterator[Transaction]:
        with self.locked(user_id):
            with self._store.transaction() as txn:
                yield txn

    def load(self, txn: Transaction, user_id: str) -> LedgerRecord:
        """Read a record inside ``txn``, creating the starter record if absent."""
        data = txn.read(LEDGER_KEY_PREFIX + user_id)
        if data is not None:
            return LedgerRecord.from_dict(data)
        record = LedgerRecord(
            user_id=user_id,
            balance=self.starter_balance,
            total_purchased=0,
            total_used=0,
            updated_at=utcnow(),
        )
        txn.write(LEDGER_KEY_PREFIX + user_id, record.to_dict())
        logger.info("Created ledger for %s with %d starter credits", user_id, self.starter_balance)
        return record

    def _save(self, txn: Transaction, record: LedgerRecord) -> LedgerRecord:
        record = replace(record, updated_at=utcnow())
        txn.write(LEDGER_KEY_PREFIX + record.user_id, record.to_dict())
        return record

    def get(self, user_id: str) -> LedgerRecord:
        """Return the user's record, creating it with the starter balance."""
        _require_user(user_id)
        with self._mutation(user_id) as txn:
            return self.load(txn, user_id)

    def debit(self, user_id: str, amount: int) -> bool:
        """Take ``amount`` credits if the balance covers it.

        Returns:
            True if debited; False (and no mutation) if funds are insufficient
        """
        _require_user(user_id)
        _require_amount(amount)
        with self._mutation(user_id) as txn:
            record = self.load(txn, user_id)
            if record.balance < amount:
                logger.warning(
                    "Refused debit of %d for %s (balance %d)", amount, user_id, record.balance
                )
                return False
            self._save(txn, replace(
                record,
                balance=record.balance - amount,
                total_used=record.total_used + amount,
            ))
        logger.info("Debited %d credits from %s", amount, user_id)
        return True

    def credit(self, user_id: str, amount: int) -> LedgerRecord:
        """Add purchased credits to the user's balance."""
        _require_user(user_id)
        _require_amount(amount)
        with self._mutation(user_id) as txn:
            return self.apply_credit(txn, user_id, amount)

    def apply_credit(self, txn: Transaction, user_id: str, amount: int) -> LedgerRecord:
        """Credit inside an existing transaction.

        The caller must already hold ``locked(user_id)``.
        """
        _require_amount(amount)
        record = self.load(txn, user_id)
        record = self._save(txn, replace(
            record,
            balance=record.balance + amount,
            total_purchased=record.total_purchased + amount,
        ))
        logger.info("Credited %d credits to %s (balance %d)", amount, user_id, record.balance)
        return record

    def reserve(self, user_id: str, amount: int) -> Optional[Reservation]:
        """Provisionally debit ``amount`` for an in-flight operation.

        Returns:
            The reservation, or None (and no mutation) if funds are insufficient
        """
        _require_user(user_id)
        _require_amount(amount)
        with self._mutation(user_id) as txn:
            record = self.load(txn, user_id)
            if record.balance < amount:
                logger.warning(
                    "Refused reservation of %d for %s (balance %d)",
                    amount, user_id, record.balance,
                )
                return None
            reservation = Reservation(id=f"res_{uuid.uuid4().hex}", user_id=user_id, amount=amount)
            self._save(txn, replace(
                record,
                balance=record.balance - amount,
                reserved=record.reserved + amount,
            ))
            txn.write(RESERVATION_KEY_PREFIX + reservation.id, {
                "user_id": user_id,
                "amount": amount,
                "created_at": utcnow().isoformat(),
            })
        return reservation

    def commit(self, reservation: Reservation, used: Optional[int] = None) -> LedgerRecord:
        """Finalize ``used`` credits of a reservation and return the rest.

        Args:
            reservation: Reservation returned by ``reserve``
            used: Credits actually consumed; defaults to the whole reservation

        Raises:
            ValidationError: If ``used`` exceeds the reservation or the
                reservation was already settled
        """
        with self.settling(reservation, used) as (_, record):
            return record

    @contextmanager
    def settling(
        self, reservation: Reservation, used: Optional[int] = None
    ) -> Iterator[Tuple[Transaction, LedgerRecord]]:
        """Settle a reservation and yield the open transaction with the new record.

        Anything written through the yielded transaction commits atomically
        with the charge; an exception in the block rolls both back and
        leaves the reservation in place.
        """
        used = reservation.amount if used is None else used
        _require_amount(used)
        if used > reservation.amount:
            raise ValidationError(
                f"Cannot commit {used} credits against a reservation of {reservation.amount}"
            )
        with self._mutation(reservation.user_id) as txn:
            yield txn, self._settle(txn, reservation, used)
        if used:
            logger.info("Charged %d credits to %s", used, reservation.user_id)

    def release(self, reservation: Reservation) -> LedgerRecord:
        """Return a whole reservation to the balance without charging."""
        with self._mutation(reservation.user_id) as txn:
            record = self._settle(txn, reservation, 0)
        logger.info("Released %d reserved credits for %s", reservation.amount, reservation.user_id)
        return record

    def release_expired(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Release reservations older than ``max_age``.

        Recovers credits held by operations whose process died before
        settling. ``max_age`` must exceed the longest metered operation.

        Returns:
            Number of reservations released
        """
        cutoff = (now or utcnow()) - max_age
        released = 0
        for key, data in self._store.scan(RESERVATION_KEY_PREFIX):
            if datetime.fromisoformat(data["created_at"]) > cutoff:
                continue
            reservation = Reservation(
                id=key[len(RESERVATION_KEY_PREFIX):],
                user_id=data["user_id"],
                amount=data["amount"],
            )
            with self._mutation(reservation.user_id) as txn:
                # Settled by its owner since the scan
                if txn.read(key) is None:
                    continue
                self._settle(txn, reservation, 0)
            released += 1
            logger.warning(
                "Released expired reservation %s of %d credits for %s",
                reservation.id, reservation.amount, reservation.user_id,
            )
        return released

    def _settle(self, txn: Transaction, reservation: Reservation, used: int) -> LedgerRecord:
        """Apply a settlement; the caller holds the user's lock and ``txn``."""
        if not txn.delete(RESERVATION_KEY_PREFIX + reservation.id):
            raise ValidationError(f"Reservation {reservation.id} is already settled")
        record = self.load(txn, reservation.user_id)
        return self._save(txn, replace(
            record,
            balance=record.balance + reservation.amount - used,
            reserved=record.reserved - reservation.amount,
            total_used=record.total_used + used,
        ))
