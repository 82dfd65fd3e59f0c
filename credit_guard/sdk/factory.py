"""
Service wiring.

Constructs the store and every component once per process so request
handlers receive explicit collaborators instead of module-level singletons.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ..config.loader import AppConfig
from ..core.events import UsageEventRecorder
from ..core.ledger import LedgerStore
from ..core.locks import KeyedLocks
from ..core.metering import MeteringGate
from ..core.pricing import PricingTable
from ..core.reconciliation import PaymentProcessor, PaymentReconciler
from ..storage.repository import SQLiteStore
from .openai_client import ImageGenerator, MeteredImageClient, OpenAIImageGenerator
from .stripe_client import StripePayments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Services:
    """Object graph shared by all handlers of one process."""
    store: SQLiteStore
    pricing: PricingTable
    ledger: LedgerStore
    recorder: UsageEventRecorder
    gate: MeteringGate
    reconciler: PaymentReconciler
    images: MeteredImageClient


def build_services(
    config: AppConfig,
    generator: Optional[ImageGenerator] = None,
    processor: Optional[PaymentProcessor] = None,
) -> Services:
    """Build all components from configuration.

    Reservations left behind by a process that died mid-operation and are
    older than ``ledger.reservation_ttl`` are returned to their balances.

    Args:
        config: Loaded application configuration
        generator: Image capability override (defaults to OpenAI)
        processor: Payment capability override (defaults to Stripe)
    """
    store = SQLiteStore(config.storage.db_path, config.storage.busy_timeout)
    locks = KeyedLocks()
    ledger = LedgerStore(store, starter_balance=config.ledger.starter_balance, locks=locks)
    released = ledger.release_expired(timedelta(seconds=config.ledger.reservation_ttl))
    if released:
        logger.info("Recovered %d stale reservations", released)
    recorder = UsageEventRecorder(store, retention=config.events.retention)
    gate = MeteringGate(ledger, config.pricing, recorder)
    processor = processor or StripePayments(
        secret_key=config.stripe.secret_key,
        webhook_secret=config.stripe.webhook_secret,
        frontend_url=config.stripe.frontend_url,
    )
    reconciler = PaymentReconciler(store, ledger, config.pricing, recorder, processor, locks=locks)
    images = MeteredImageClient(gate, generator or OpenAIImageGenerator())
    return Services(
        store=store,
        pricing=config.pricing,
        ledger=ledger,
        recorder=recorder,
        gate=gate,
        reconciler=reconciler,
        images=images,
    )
