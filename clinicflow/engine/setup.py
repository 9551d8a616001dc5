"""
Engine Setup — builds and wires the scheduling / billing components.

Called once during app startup (or lazily by the first request).
Everything shares one ClinicStore and one NotificationHub.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from clinicflow.engine.availability import AvailabilityResolver
from clinicflow.engine.billing import BillingService
from clinicflow.engine.cycles import BillingCycleManager
from clinicflow.engine.events import NotificationHub
from clinicflow.engine.lifecycle import AppointmentLifecycle
from clinicflow.engine.packages import PackageLedger
from clinicflow.engine.slots import SlotGenerator
from clinicflow.engine.store import ClinicStore

logger = logging.getLogger("engine.setup")


@dataclass
class ClinicEngine:
    store: ClinicStore
    hub: NotificationHub
    availability: AvailabilityResolver
    slots: SlotGenerator
    billing: BillingService
    lifecycle: AppointmentLifecycle
    packages: PackageLedger
    cycles: BillingCycleManager


def build_engine(gcs_bucket_manager=None) -> ClinicEngine:
    """Wire a fresh engine. In-memory when no GCS manager is given."""
    store = ClinicStore(gcs_bucket_manager)
    hub = NotificationHub()
    availability = AvailabilityResolver(store)
    billing = BillingService(store, hub)
    return ClinicEngine(
        store=store,
        hub=hub,
        availability=availability,
        slots=SlotGenerator(store, availability),
        billing=billing,
        lifecycle=AppointmentLifecycle(store, billing, availability, hub),
        packages=PackageLedger(store, hub),
        cycles=BillingCycleManager(store, hub),
    )


# Module-level singleton (set during initialize)
_engine: ClinicEngine | None = None


def initialize_engine(gcs_bucket_manager=None) -> ClinicEngine:
    global _engine

    logger.info("Initializing ClinicFlow engine (%s)...", "GCS" if gcs_bucket_manager else "in-memory")
    _engine = build_engine(gcs_bucket_manager)
    active = _engine.cycles.ensure_active()
    logger.info("ClinicFlow engine ready — active billing cycle %s", active.cycle_id)
    return _engine


def get_engine() -> ClinicEngine | None:
    return _engine


def shutdown_engine() -> None:
    global _engine
    _engine = None
    logger.info("ClinicFlow engine shut down")
