"""
Tests for the metering gate.

Tests check-reserve-charge sequencing, failure and cancellation release,
batch partial charging and concurrent requests racing for one balance.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from credit_guard.core.errors import ExternalProviderError, StorageError, ValidationError
from credit_guard.core.events import UsageEventRecorder
from credit_guard.core.ledger import RESERVATION_KEY_PREFIX, LedgerStore
from credit_guard.core.metering import MeteringGate
from credit_guard.core.pricing import PRICING_TABLE
from credit_guard.storage.models import EventType


def _events(store):
    return store.fetch_events(newest_first=False)


def _gate(store, starter_balance):
    ledger = LedgerStore(store, starter_balance=starter_balance)
    return MeteringGate(ledger, PRICING_TABLE, UsageEventRecorder(store)), ledger


def _failing_on(recorder, failing_type):
    """Wrap recorder.record so events of ``failing_type`` raise StorageError."""
    real_record = recorder.record

    def record(event_type, user_id, metadata=None, txn=None):
        if event_type == failing_type:
            raise StorageError("disk I/O error")
        return real_record(event_type, user_id, metadata, txn=txn)

    return patch.object(recorder, "record", side_effect=record)


class TestCheck:
    """Test the read-only affordability check."""

    def test_check_authorized(self, gate):
        result = gate.check("alice", "dall-e-3", 2)
        assert result.authorized is True
        assert result.cost == 4
        assert result.remaining == 1

    def test_check_unauthorized(self, gate):
        result = gate.check("alice", "gpt-image-1", 2)
        assert result.authorized is False
        assert result.required == 6
        assert result.balance == 5

    def test_check_does_not_reserve(self, gate, ledger):
        gate.check("alice", "dall-e-3", 1)
        assert ledger.get("alice").balance == 5
        assert ledger.get("alice").reserved == 0


class TestAuthorizeAndCharge:
    """Test single metered operations."""

    def test_success_charges_and_logs(self, gate, ledger, store):
        """Balance 5, dall-e-3 costs 2: operation runs, balance ends at 3."""
        result = gate.authorize_and_charge("alice", "dall-e-3", 1, lambda: ["image"])

        assert result.authorized is True
        assert result.cost == 2
        assert result.remaining == 3
        assert result.value == ["image"]
        record = ledger.get("alice")
        assert record.balance == 3
        assert record.total_used == 2
        assert record.reserved == 0

        events = _events(store)
        assert [e.type for e in events] == [EventType.GENERATED, EventType.USED]
        assert events[0].metadata["model"] == "dall-e-3"
        assert events[0].metadata["count"] == 1
        assert events[1].metadata == {"credits": 2, "reason": "image_generation"}

    def test_insufficient_funds_skips_operation(self, store):
        """Balance 1, dall-e-3 costs 2: no call, no mutation, no event."""
        gate, ledger = _gate(store, starter_balance=1)
        calls = []

        result = gate.authorize_and_charge("alice", "dall-e-3", 1, lambda: calls.append(1))

        assert result.authorized is False
        assert result.required == 2
        assert result.balance == 1
        assert calls == []
        assert ledger.get("alice").balance == 1
        assert ledger.get("alice").total_used == 0
        assert store.count_events() == 0

    def test_reservation_is_held_during_operation(self, gate, ledger):
        observed = {}

        def operation():
            record = ledger.get("alice")
            observed["balance"] = record.balance
            observed["reserved"] = record.reserved
            return "ok"

        gate.authorize_and_charge("alice", "dall-e-3", 2, operation)
        assert observed == {"balance": 1, "reserved": 4}
        assert ledger.get("alice").reserved == 0

    def test_failed_operation_is_not_charged(self, gate, ledger, store):
        """Verify the reservation is released and a failed event logged."""

        def operation():
            raise ExternalProviderError("openai", "content policy violation")

        with pytest.raises(ExternalProviderError):
            gate.authorize_and_charge("alice", "dall-e-3", 1, operation)

        record = ledger.get("alice")
        assert record.balance == 5
        assert record.total_used == 0
        assert record.reserved == 0
        events = _events(store)
        assert [e.type for e in events] == [EventType.FAILED]
        assert events[0].metadata["model"] == "dall-e-3"
        assert "content policy" in events[0].metadata["error"]

    def test_cancelled_operation_is_not_charged(self, gate, ledger, store):
        def operation():
            raise KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            gate.authorize_and_charge("alice", "dall-e-3", 1, operation)

        record = ledger.get("alice")
        assert record.balance == 5
        assert record.reserved == 0
        assert store.count_events() == 0

    def test_metadata_is_logged(self, gate, store):
        gate.authorize_and_charge(
            "alice", "dall-e-3", 1, lambda: None, metadata={"size": "1024x1024"}
        )
        generated = _events(store)[0]
        assert generated.metadata["size"] == "1024x1024"
        assert generated.metadata["cost"] == 2

    def test_event_write_failure_rolls_back_charge(self, gate, ledger, recorder, store):
        """The charge and its events commit together or not at all."""
        with _failing_on(recorder, EventType.USED):
            with pytest.raises(StorageError):
                gate.authorize_and_charge("alice", "dall-e-3", 1, lambda: ["image"])

        record = ledger.get("alice")
        assert record.balance == 5
        assert record.total_used == 0
        assert record.reserved == 0
        assert store.count_events() == 0
        assert store.scan(RESERVATION_KEY_PREFIX) == []

    def test_charge_and_events_share_one_transaction(self, gate, recorder):
        with patch.object(recorder, "record", wraps=recorder.record) as record:
            gate.authorize_and_charge("alice", "dall-e-2", 1, lambda: None)

        txns = [call.kwargs["txn"] for call in record.call_args_list]
        assert len(txns) == 2
        assert txns[0] is not None
        assert txns[0] is txns[1]

    @pytest.mark.parametrize("unit_count", [0, 11, -1])
    def test_unit_count_out_of_range(self, gate, ledger, unit_count):
        with pytest.raises(ValidationError):
            gate.authorize_and_charge("alice", "dall-e-3", unit_count, lambda: None)
        assert ledger.get("alice").balance == 5

    def test_concurrent_requests_share_one_balance(self, store):
        """Balance 5, cost 2: of six concurrent slow requests exactly two run."""
        gate, ledger = _gate(store, starter_balance=5)
        ledger.get("alice")
        ran = []
        ran_lock = threading.Lock()

        def operation():
            time.sleep(0.05)
            with ran_lock:
                ran.append(1)
            return "image"

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(
                lambda _: gate.authorize_and_charge("alice", "dall-e-3", 1, operation), range(6)
            ))

        assert sum(1 for r in results if r.authorized) == 2
        assert len(ran) == 2
        record = ledger.get("alice")
        assert record.balance == 1
        assert record.total_used == 4
        assert record.reserved == 0


class TestBatch:
    """Test batch metering with per-item outcomes."""

    def test_partial_batch_charges_successes_only(self, store):
        """Five prompts, two fail: only three are charged in one mutation."""
        gate, ledger = _gate(store, starter_balance=20)
        prompts = ["a", "fail-1", "b", "fail-2", "c"]

        def operation(prompt):
            if prompt.startswith("fail"):
                raise ExternalProviderError("openai", "rejected")
            return prompt.upper()

        result = gate.authorize_and_charge_batch("alice", "dall-e-3", prompts, operation)

        assert result.authorized is True
        assert result.cost_per_item == 2
        assert result.successes == 3
        assert result.credits_used == 6
        assert result.remaining == 14
        assert [r.success for r in result.results] == [True, False, True, False, True]
        assert result.results[1].error is not None
        assert result.results[0].value == "A"

        record = ledger.get("alice")
        assert record.balance == 14
        assert record.total_used == 6
        assert record.reserved == 0

        events = _events(store)
        used = [e for e in events if e.type == EventType.USED]
        generated = [e for e in events if e.type == EventType.GENERATED]
        assert len(used) == 1
        assert used[0].metadata == {"credits": 6, "reason": "batch_generation"}
        assert len(generated) == 1
        assert generated[0].metadata["count"] == 3
        assert generated[0].metadata["batch"] is True

    def test_batch_requires_full_cost_up_front(self, gate, ledger, store):
        result = gate.authorize_and_charge_batch(
            "alice", "dall-e-3", ["a", "b", "c"], lambda prompt: prompt
        )
        assert result.authorized is False
        assert result.required == 6
        assert result.balance == 5
        assert result.results == []
        assert ledger.get("alice").balance == 5
        assert store.count_events() == 0

    def test_batch_all_failed_charges_nothing(self, gate, ledger, store):
        def operation(prompt):
            raise ExternalProviderError("openai", "down")

        result = gate.authorize_and_charge_batch("alice", "dall-e-2", ["a", "b"], operation)

        assert result.authorized is True
        assert result.credits_used == 0
        assert result.remaining == 5
        assert ledger.get("alice").reserved == 0
        assert store.count_events() == 0

    def test_batch_cancellation_charges_completed_items(self, gate, ledger):
        def operation(prompt):
            if prompt == "stop":
                raise KeyboardInterrupt()
            return prompt

        with pytest.raises(KeyboardInterrupt):
            gate.authorize_and_charge_batch("alice", "dall-e-2", ["a", "stop", "b"], operation)

        record = ledger.get("alice")
        assert record.balance == 4
        assert record.total_used == 1
        assert record.reserved == 0

    def test_batch_event_write_failure_rolls_back_charge(self, gate, ledger, recorder, store):
        with _failing_on(recorder, EventType.GENERATED):
            with pytest.raises(StorageError):
                gate.authorize_and_charge_batch("alice", "dall-e-2", ["a", "b"], lambda p: p)

        record = ledger.get("alice")
        assert record.balance == 5
        assert record.total_used == 0
        assert record.reserved == 0
        assert store.count_events() == 0

    def test_batch_size_limits(self, gate):
        with pytest.raises(ValidationError):
            gate.authorize_and_charge_batch("alice", "dall-e-2", [], lambda p: p)
        with pytest.raises(ValidationError):
            gate.authorize_and_charge_batch("alice", "dall-e-2", ["p"] * 11, lambda p: p)
