"""
Payment reconciliation.

Turns a confirmed external payment into a ledger credit exactly once.
The synchronous verify path and the processor webhook both funnel into the
same compare-and-swap on the payment status, performed under the payment
lock and the user's ledger lock in one transaction together with the
credit and the purchase event.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from .errors import ReconciliationConflictError, ValidationError
from .events import UsageEventRecorder
from .ledger import LedgerStore
from .locks import KeyedLocks
from .pricing import PricingTable, PricingTier
from credit_guard.storage.models import EventType, PaymentRecord, PaymentStatus, utcnow
from credit_guard.storage.repository import SQLiteStore, Transaction

logger = logging.getLogger(__name__)

PAYMENT_KEY_PREFIX = "payment:"
SESSION_INDEX_PREFIX = "payment-session:"
USER_INDEX_PREFIX = "payments-by-user:"

WEBHOOK_COMPLETED = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
WEBHOOK_FAILED = ("checkout.session.expired", "checkout.session.async_payment_failed")


@dataclass(frozen=True)
class CheckoutSession:
    """Processor-side checkout handle."""
    session_id: str
    url: str


@dataclass(frozen=True)
class SessionStatus:
    """Processor's view of a checkout session."""
    paid: bool
    metadata: Dict[str, str]


class PaymentProcessor(Protocol):
    """External payment capability."""

    def create_checkout(self, tier: PricingTier, user_id: str) -> CheckoutSession:
        ...

    def retrieve_session(self, session_id: str) -> SessionStatus:
        ...

    def construct_event(self, payload: bytes, signature: str) -> Mapping[str, Any]:
        ...


@dataclass(frozen=True)
class CheckoutResult:
    payment: PaymentRecord
    redirect_url: str


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of a verify or webhook completion.

    ``credits_added`` is zero when the payment had already been completed
    by the other path.
    """
    payment: PaymentRecord
    credits_added: int
    balance: int
    already_completed: bool


def parse_session_metadata(metadata: Optional[Mapping[str, Any]]) -> Tuple[str, int]:
    """Extract (user_id, credits) from checkout session metadata.

    Raises:
        ValidationError: If userId is missing or credits is not a positive integer
    """
    metadata = metadata or {}
    user_id = metadata.get("userId")
    if not isinstance(user_id, str) or not user_id:
        raise ValidationError("Invalid session metadata: missing userId")
    raw_credits = metadata.get("credits")
    try:
        credits = int(str(raw_credits))
    except ValueError:
        raise ValidationError(f"Invalid session metadata: credits {raw_credits!r} is not an integer")
    if credits <= 0:
        raise ValidationError(f"Invalid session metadata: credits must be > 0, got {credits}")
    return user_id, credits


class PaymentReconciler:
    """Creates checkouts and converts confirmed payments into credits."""

    def __init__(
        self,
        store: SQLiteStore,
        ledger: LedgerStore,
        pricing: PricingTable,
        recorder: UsageEventRecorder,
        processor: PaymentProcessor,
        locks: Optional[KeyedLocks] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._pricing = pricing
        self._recorder = recorder
        self._processor = processor
        self._locks = locks or KeyedLocks()

    def create_checkout(self, user_id: str, tier_id: str) -> CheckoutResult:
        """Open a processor checkout for a tier and record a pending payment.

        Raises:
            ValidationError: If the tier is unknown or user_id is empty
            ExternalProviderError: If the processor call fails; nothing is persisted
        """
        if not user_id:
            raise ValidationError("user_id is required and cannot be empty")
        tier = self._pricing.get_tier(tier_id)
        session = self._processor.create_checkout(tier, user_id)

        payment = PaymentRecord(
            id=f"pay_{uuid.uuid4().hex}",
            user_id=user_id,
            tier_id=tier.id,
            credits=tier.credits,
            amount_cents=tier.price_cents,
            status=PaymentStatus.PENDING,
            external_session_id=session.session_id,
            created_at=utcnow(),
        )
        with self._store.transaction() as txn:
            txn.write(PAYMENT_KEY_PREFIX + payment.id, payment.to_dict())
            txn.write(SESSION_INDEX_PREFIX + session.session_id, {"payment_id": payment.id})
            index = txn.read(USER_INDEX_PREFIX + user_id) or {"payment_ids": []}
            index["payment_ids"].append(payment.id)
            txn.write(USER_INDEX_PREFIX + user_id, index)
        logger.info(
            "Created pending payment %s for %s (%s, session %s)",
            payment.id, user_id, tier.id, session.session_id,
        )
        return CheckoutResult(payment=payment, redirect_url=session.url)

    def verify(self, session_id: str) -> ReconciliationResult:
        """Client-initiated confirmation of a checkout session.

        Raises:
            ValidationError: If the session id is missing, the session is unpaid,
                its metadata is malformed, or no payment record matches it
            ExternalProviderError: If the processor cannot be reached; the
                payment stays pending
        """
        if not session_id:
            raise ValidationError("session id is required")
        status = self._processor.retrieve_session(session_id)
        if not status.paid:
            raise ValidationError("Payment not completed")
        user_id, credits = parse_session_metadata(status.metadata)
        return self._complete(session_id, user_id, credits)

    def handle_webhook(self, payload: bytes, signature: str) -> Optional[ReconciliationResult]:
        """Processor-initiated notification.

        Returns:
            The reconciliation result for completion events, None for events
            that do not complete a payment

        Raises:
            ValidationError: On a bad signature or malformed session metadata
        """
        event = self._processor.construct_event(payload, signature)
        event_type = event["type"]
        session = event["data"]["object"]
        session_id = session["id"]

        if event_type in WEBHOOK_COMPLETED:
            if session.get("payment_status") not in (None, "paid", "no_payment_required"):
                logger.info("Ignoring %s for unpaid session %s", event_type, session_id)
                return None
            user_id, credits = parse_session_metadata(session.get("metadata"))
            return self._complete(session_id, user_id, credits)
        if event_type in WEBHOOK_FAILED:
            self.mark_failed(session_id)
            return None

        logger.info("Unhandled webhook event type: %s", event_type)
        return None

    def mark_failed(self, session_id: str) -> Optional[PaymentRecord]:
        """Move a pending payment to failed; completed payments are left alone."""
        payment = self._find_by_session(self._store, session_id)
        if payment is None:
            logger.warning("No payment record for failed session %s", session_id)
            return None
        with self._locks.hold(PAYMENT_KEY_PREFIX + payment.id):
            with self._store.transaction() as txn:
                current = self._read_payment(txn, payment.id)
                if current.status != PaymentStatus.PENDING:
                    return current
                failed = replace(current, status=PaymentStatus.FAILED)
                txn.write(PAYMENT_KEY_PREFIX + failed.id, failed.to_dict())
        logger.info("Payment %s for session %s marked failed", payment.id, session_id)
        return failed

    def history(self, user_id: str) -> List[PaymentRecord]:
        """All payment records of a user, newest first."""
        index = self._store.read(USER_INDEX_PREFIX + user_id) or {"payment_ids": []}
        payments = []
        for payment_id in index["payment_ids"]:
            data = self._store.read(PAYMENT_KEY_PREFIX + payment_id)
            if data is not None:
                payments.append(PaymentRecord.from_dict(data))
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    def _complete(self, session_id: str, user_id: str, credits: int) -> ReconciliationResult:
        payment = self._find_by_session(self._store, session_id)
        if payment is None:
            raise ValidationError(f"No payment record for session {session_id}")
        if payment.user_id != user_id or payment.credits != credits:
            raise ValidationError(
                f"Session {session_id} metadata does not match payment {payment.id}"
            )

        # Lock order: payment, then ledger, then the store's write lock
        with self._locks.hold(PAYMENT_KEY_PREFIX + payment.id), self._ledger.locked(payment.user_id):
            with self._store.transaction() as txn:
                current = self._read_payment(txn, payment.id)
                try:
                    completed = self._transition_to_completed(current)
                except ReconciliationConflictError as conflict:
                    if conflict.status != PaymentStatus.COMPLETED.value:
                        raise ValidationError(
                            f"Payment {payment.id} is {conflict.status} and cannot be completed"
                        )
                    record = self._ledger.load(txn, payment.user_id)
                    logger.info("Payment %s already completed; nothing to do", payment.id)
                    return ReconciliationResult(
                        payment=current, credits_added=0,
                        balance=record.balance, already_completed=True,
                    )

                txn.write(PAYMENT_KEY_PREFIX + completed.id, completed.to_dict())
                record = self._ledger.apply_credit(txn, completed.user_id, completed.credits)
                self._recorder.record(EventType.PURCHASED, completed.user_id, {
                    "credits": completed.credits,
                    "amount": completed.amount_cents,
                    "tier_id": completed.tier_id,
                }, txn=txn)

        logger.info(
            "Added %d credits to %s for payment %s", completed.credits, completed.user_id, completed.id
        )
        return ReconciliationResult(
            payment=completed, credits_added=completed.credits,
            balance=record.balance, already_completed=False,
        )

    @staticmethod
    def _transition_to_completed(payment: PaymentRecord) -> PaymentRecord:
        if payment.status != PaymentStatus.PENDING:
            raise ReconciliationConflictError(payment.external_session_id, payment.status.value)
        return replace(payment, status=PaymentStatus.COMPLETED, completed_at=utcnow())

    @staticmethod
    def _read_payment(txn: Transaction, payment_id: str) -> PaymentRecord:
        return PaymentRecord.from_dict(txn.read(PAYMENT_KEY_PREFIX + payment_id))

    @staticmethod
    def _find_by_session(reader, session_id: str) -> Optional[PaymentRecord]:
        index = reader.read(SESSION_INDEX_PREFIX + session_id)
        if index is None:
            return None
        data = reader.read(PAYMENT_KEY_PREFIX + index["payment_id"])
        if data is None:
            return None
        return PaymentRecord.from_dict(data)
