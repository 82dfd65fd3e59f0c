"""
Tests for payment reconciliation.

Tests checkout creation, exactly-once crediting across the verify and
webhook paths, failure transitions and purchase history.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from credit_guard.core.errors import ExternalProviderError, ValidationError
from credit_guard.core.reconciliation import parse_session_metadata
from credit_guard.storage.models import EventType, PaymentStatus


def _purchases(store):
    return [e for e in store.fetch_events() if e.type == EventType.PURCHASED]


def _paid_checkout(reconciler, processor, user_id="alice", tier_id="pro"):
    checkout = reconciler.create_checkout(user_id, tier_id)
    session_id = checkout.payment.external_session_id
    processor.pay(session_id)
    return session_id


class TestSessionMetadata:
    """Test checkout metadata parsing."""

    def test_valid_metadata(self):
        assert parse_session_metadata({"userId": "alice", "credits": "50"}) == ("alice", 50)

    @pytest.mark.parametrize("metadata", [
        None,
        {},
        {"credits": "50"},
        {"userId": "", "credits": "50"},
        {"userId": "alice"},
        {"userId": "alice", "credits": "fifty"},
        {"userId": "alice", "credits": "0"},
        {"userId": "alice", "credits": "-5"},
    ])
    def test_invalid_metadata(self, metadata):
        with pytest.raises(ValidationError, match="Invalid session metadata"):
            parse_session_metadata(metadata)


class TestCheckout:
    """Test checkout creation."""

    def test_creates_pending_payment(self, reconciler, store):
        result = reconciler.create_checkout("alice", "pro")

        payment = result.payment
        assert payment.status == PaymentStatus.PENDING
        assert payment.credits == 50
        assert payment.amount_cents == 2000
        assert payment.tier_id == "pro"
        assert payment.external_session_id == "cs_test_1"
        assert payment.completed_at is None
        assert result.redirect_url == "https://pay.test/cs_test_1"
        assert store.read(f"payment:{payment.id}")["status"] == "pending"

    def test_unknown_tier_rejected(self, reconciler):
        with pytest.raises(ValidationError, match="Invalid tier"):
            reconciler.create_checkout("alice", "platinum")
        assert reconciler.history("alice") == []

    def test_processor_failure_persists_nothing(self, reconciler, processor):
        processor.fail_create = True
        with pytest.raises(ExternalProviderError):
            reconciler.create_checkout("alice", "pro")
        assert reconciler.history("alice") == []

    def test_empty_user_rejected(self, reconciler):
        with pytest.raises(ValidationError):
            reconciler.create_checkout("", "pro")


class TestVerify:
    """Test the client-initiated verify path."""

    def test_verify_credits_once(self, reconciler, processor, ledger, store):
        """Second verify of the same session is a no-op."""
        session_id = _paid_checkout(reconciler, processor)

        first = reconciler.verify(session_id)
        assert first.credits_added == 50
        assert first.balance == 55
        assert first.already_completed is False
        assert first.payment.status == PaymentStatus.COMPLETED
        assert first.payment.completed_at is not None

        second = reconciler.verify(session_id)
        assert second.credits_added == 0
        assert second.balance == 55
        assert second.already_completed is True

        record = ledger.get("alice")
        assert record.balance == 55
        assert record.total_purchased == 50
        purchases = _purchases(store)
        assert len(purchases) == 1
        assert purchases[0].metadata == {"credits": 50, "amount": 2000, "tier_id": "pro"}

    def test_unpaid_session_rejected(self, reconciler, processor, ledger):
        checkout = reconciler.create_checkout("alice", "starter")
        with pytest.raises(ValidationError, match="Payment not completed"):
            reconciler.verify(checkout.payment.external_session_id)
        assert reconciler.history("alice")[0].status == PaymentStatus.PENDING
        assert ledger.get("alice").balance == 5

    def test_session_without_payment_record(self, reconciler, processor):
        processor.sessions["cs_orphan"] = {
            "paid": True, "metadata": {"userId": "alice", "credits": "10"},
        }
        with pytest.raises(ValidationError, match="No payment record"):
            reconciler.verify("cs_orphan")

    def test_malformed_metadata_rejected(self, reconciler, processor, ledger):
        session_id = _paid_checkout(reconciler, processor)
        processor.sessions[session_id]["metadata"]["credits"] = "lots"
        with pytest.raises(ValidationError):
            reconciler.verify(session_id)
        assert ledger.get("alice").balance == 5

    def test_metadata_mismatch_rejected(self, reconciler, processor, ledger):
        session_id = _paid_checkout(reconciler, processor)
        processor.sessions[session_id]["metadata"]["credits"] = "500"
        with pytest.raises(ValidationError, match="does not match"):
            reconciler.verify(session_id)
        assert ledger.get("alice").balance == 5

    def test_processor_unreachable_leaves_pending(self, reconciler, processor):
        checkout = reconciler.create_checkout("alice", "pro")
        del processor.sessions[checkout.payment.external_session_id]
        with pytest.raises(ExternalProviderError):
            reconciler.verify(checkout.payment.external_session_id)
        assert reconciler.history("alice")[0].status == PaymentStatus.PENDING

    def test_missing_session_id(self, reconciler):
        with pytest.raises(ValidationError):
            reconciler.verify("")


class TestWebhook:
    """Test the processor-initiated webhook path."""

    def test_webhook_completes_payment(self, reconciler, processor, ledger):
        session_id = _paid_checkout(reconciler, processor)
        result = reconciler.handle_webhook(processor.webhook_payload(session_id), "valid-signature")

        assert result.credits_added == 50
        assert ledger.get("alice").balance == 55

    def test_verify_then_webhook_credits_once(self, reconciler, processor, ledger, store):
        """Both paths fire for one payment: credited exactly once."""
        session_id = _paid_checkout(reconciler, processor)
        reconciler.verify(session_id)

        result = reconciler.handle_webhook(processor.webhook_payload(session_id), "valid-signature")

        assert result.already_completed is True
        assert result.credits_added == 0
        assert ledger.get("alice").balance == 55
        assert len(_purchases(store)) == 1

    def test_webhook_then_verify_credits_once(self, reconciler, processor, ledger, store):
        session_id = _paid_checkout(reconciler, processor)
        reconciler.handle_webhook(processor.webhook_payload(session_id), "valid-signature")

        result = reconciler.verify(session_id)

        assert result.already_completed is True
        assert ledger.get("alice").balance == 55
        assert len(_purchases(store)) == 1

    def test_racing_paths_credit_once(self, reconciler, processor, ledger, store):
        """Concurrent verify and webhook deliveries add the credits exactly once."""
        session_id = _paid_checkout(reconciler, processor)
        payload = processor.webhook_payload(session_id)

        def deliver(index):
            if index % 2:
                return reconciler.verify(session_id)
            return reconciler.handle_webhook(payload, "valid-signature")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(deliver, range(8)))

        assert sum(r.credits_added for r in results) == 50
        assert sum(1 for r in results if not r.already_completed) == 1
        assert ledger.get("alice").balance == 55
        assert len(_purchases(store)) == 1

    def test_bad_signature_rejected(self, reconciler, processor, ledger):
        session_id = _paid_checkout(reconciler, processor)
        with pytest.raises(ValidationError):
            reconciler.handle_webhook(processor.webhook_payload(session_id), "forged")
        assert ledger.get("alice").balance == 5

    def test_unpaid_completion_is_ignored(self, reconciler, processor, ledger):
        checkout = reconciler.create_checkout("alice", "pro")
        payload = processor.webhook_payload(checkout.payment.external_session_id)
        assert reconciler.handle_webhook(payload, "valid-signature") is None
        assert ledger.get("alice").balance == 5

    def test_unhandled_event_type(self, reconciler, processor):
        session_id = _paid_checkout(reconciler, processor)
        payload = processor.webhook_payload(session_id, event_type="payment_intent.created")
        assert reconciler.handle_webhook(payload, "valid-signature") is None
        assert reconciler.history("alice")[0].status == PaymentStatus.PENDING

    def test_expired_session_marks_failed(self, reconciler, processor):
        checkout = reconciler.create_checkout("alice", "pro")
        session_id = checkout.payment.external_session_id
        payload = processor.webhook_payload(session_id, event_type="checkout.session.expired")

        assert reconciler.handle_webhook(payload, "valid-signature") is None
        assert reconciler.history("alice")[0].status == PaymentStatus.FAILED

    def test_failed_payment_cannot_complete(self, reconciler, processor, ledger):
        session_id = _paid_checkout(reconciler, processor)
        reconciler.mark_failed(session_id)
        with pytest.raises(ValidationError, match="cannot be completed"):
            reconciler.verify(session_id)
        assert ledger.get("alice").balance == 5

    def test_mark_failed_leaves_completed_payment(self, reconciler, processor):
        session_id = _paid_checkout(reconciler, processor)
        reconciler.verify(session_id)
        payment = reconciler.mark_failed(session_id)
        assert payment.status == PaymentStatus.COMPLETED

    def test_mark_failed_unknown_session(self, reconciler):
        assert reconciler.mark_failed("cs_unknown") is None


class TestHistory:
    """Test purchase history."""

    def test_history_newest_first(self, reconciler, processor):
        first = reconciler.create_checkout("alice", "starter")
        second = reconciler.create_checkout("alice", "business")
        reconciler.create_checkout("bob", "pro")

        history = reconciler.history("alice")
        assert [p.id for p in history] == [second.payment.id, first.payment.id]

    def test_history_reflects_completion(self, reconciler, processor):
        session_id = _paid_checkout(reconciler, processor)
        reconciler.verify(session_id)
        assert reconciler.history("alice")[0].status == PaymentStatus.COMPLETED

    def test_empty_history(self, reconciler):
        assert reconciler.history("nobody") == []
