"""Shared fixtures: temporary stores and in-memory external capabilities."""

import json
import os

import pytest

from credit_guard.core.errors import ExternalProviderError, ValidationError
from credit_guard.core.events import UsageEventRecorder
from credit_guard.core.ledger import LedgerStore
from credit_guard.core.locks import KeyedLocks
from credit_guard.core.metering import MeteringGate
from credit_guard.core.pricing import PRICING_TABLE
from credit_guard.core.reconciliation import CheckoutSession, PaymentReconciler, SessionStatus
from credit_guard.sdk.openai_client import GeneratedImage
from credit_guard.storage.repository import SQLiteStore


class FakeProcessor:
    """Payment processor that keeps checkout sessions in memory."""

    def __init__(self):
        self.sessions = {}
        self.fail_create = False
        self._counter = 0

    def create_checkout(self, tier, user_id):
        if self.fail_create:
            raise ExternalProviderError("stripe", "service unavailable")
        self._counter += 1
        session_id = f"cs_test_{self._counter}"
        self.sessions[session_id] = {
            "paid": False,
            "metadata": {"userId": user_id, "tierId": tier.id, "credits": str(tier.credits)},
        }
        return CheckoutSession(session_id=session_id, url=f"https://pay.test/{session_id}")

    def pay(self, session_id):
        self.sessions[session_id]["paid"] = True

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise ExternalProviderError("stripe", f"No such checkout.session: {session_id}")
        session = self.sessions[session_id]
        return SessionStatus(paid=session["paid"], metadata=dict(session["metadata"]))

    def construct_event(self, payload, signature):
        if signature != "valid-signature":
            raise ValidationError("Webhook signature verification failed")
        return json.loads(payload)

    def webhook_payload(self, session_id, event_type="checkout.session.completed"):
        session = self.sessions[session_id]
        return json.dumps({
            "type": event_type,
            "data": {"object": {
                "id": session_id,
                "payment_status": "paid" if session["paid"] else "unpaid",
                "metadata": session["metadata"],
            }},
        }).encode("utf-8")


class FakeGenerator:
    """Image generator that fails for prompts containing 'fail'."""

    def __init__(self):
        self.calls = []

    def generate(self, prompt, model, size=None, quality=None, style=None, n=1):
        self.calls.append({"prompt": prompt, "model": model, "n": n})
        if "fail" in prompt:
            raise ExternalProviderError("openai", "content policy violation")
        return [
            GeneratedImage(url=f"https://img.test/{len(self.calls)}-{i}.png")
            for i in range(n)
        ]


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(os.path.join(str(tmp_path), "test.db"))


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def ledger(store, locks):
    return LedgerStore(store, locks=locks)


@pytest.fixture
def recorder(store):
    return UsageEventRecorder(store)


@pytest.fixture
def gate(ledger, recorder):
    return MeteringGate(ledger, PRICING_TABLE, recorder)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def reconciler(store, ledger, recorder, processor, locks):
    return PaymentReconciler(store, ledger, PRICING_TABLE, recorder, processor, locks=locks)
