"""
Billing Cycle Manager — calendar-month accounting windows.

Cycle ids are "YYYY-MM".  At most one cycle is active; ``rollover``
closes it and activates the following month, reusing an existing record
for that month rather than creating a second one.
"""

from __future__ import annotations

import calendar
import logging
import re
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from pydantic import BaseModel

from clinicflow.engine.events import ClinicEvent, ClinicEventType, NotificationHub
from clinicflow.engine.models import BillingCycle, BillingRecord, BillingStatus, CycleStatus
from clinicflow.engine.store import ClinicStore

logger = logging.getLogger("engine.cycles")

_CYCLE_ID = re.compile(r"^(\d{4})-(\d{2})$")


class CycleSummary(BaseModel):
    cycle_id: str
    start_date: date
    end_date: date
    pending_count: int = 0
    completed_count: int = 0
    pending_amount: float = 0.0
    collections: float = 0.0


class RolloverResult(BaseModel):
    closed_cycle_id: Optional[str] = None
    active: BillingCycle


def cycle_id_for(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_cycle(year: int, month: int, status: CycleStatus = CycleStatus.PENDING) -> BillingCycle:
    last_day = calendar.monthrange(year, month)[1]
    return BillingCycle(
        cycle_id=cycle_id_for(year, month),
        month=month,
        year=year,
        start_date=date(year, month, 1),
        end_date=date(year, month, last_day),
        status=status,
    )


def next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def summarize(cycle: BillingCycle, records: Iterable[BillingRecord]) -> CycleSummary:
    """Totals over the records dated inside the cycle (bounds inclusive)."""
    summary = CycleSummary(
        cycle_id=cycle.cycle_id, start_date=cycle.start_date, end_date=cycle.end_date
    )
    for record in records:
        if not cycle.start_date <= record.date <= cycle.end_date:
            continue
        if record.status == BillingStatus.PENDING:
            summary.pending_count += 1
            summary.pending_amount += record.amount
        elif record.status.is_settled:
            summary.completed_count += 1
            summary.collections += record.amount
    summary.pending_amount = round(summary.pending_amount, 2)
    summary.collections = round(summary.collections, 2)
    return summary


class BillingCycleManager:
    def __init__(self, store: ClinicStore, hub: NotificationHub | None = None) -> None:
        self._store = store
        self._hub = hub

    def current_cycle(self, today: date | None = None) -> BillingCycle:
        """This month's cycle, with its stored status when it has been recorded."""
        today = today or date.today()
        cycle_id = cycle_id_for(today.year, today.month)
        stored = self._store.find("cycles", cycle_id)
        return stored or month_cycle(today.year, today.month)

    def get_cycle(self, cycle_id: str) -> BillingCycle:
        stored = self._store.find("cycles", cycle_id)
        if stored is not None:
            return stored
        match = _CYCLE_ID.match(cycle_id or "")
        if not match or not 1 <= int(match.group(2)) <= 12:
            raise ValueError(f"Invalid cycle id '{cycle_id}' (expected YYYY-MM)")
        return month_cycle(int(match.group(1)), int(match.group(2)))

    def list_cycles(self) -> list[BillingCycle]:
        return sorted(self._store.list("cycles"), key=lambda c: (c.year, c.month))

    def active_cycle(self) -> BillingCycle | None:
        active = self._store.list("cycles", lambda c: c.status == CycleStatus.ACTIVE)
        if not active:
            return None
        return max(active, key=lambda c: (c.year, c.month))

    def ensure_active(self, today: date | None = None) -> BillingCycle:
        """Return the active cycle, activating the current month when none is."""
        active = self.active_cycle()
        if active is not None:
            return active
        cycle = self.current_cycle(today)
        cycle.status = CycleStatus.ACTIVE
        cycle.closed_at = None
        self._store.put("cycles", cycle)
        logger.info("Activated billing cycle %s", cycle.cycle_id)
        return cycle

    def summarize(self, cycle_id: str | None = None, today: date | None = None) -> CycleSummary:
        cycle = self.get_cycle(cycle_id) if cycle_id else self.current_cycle(today)
        return summarize(cycle, self._store.list("billing"))

    def rollover(self, today: date | None = None) -> RolloverResult:
        active = self._store.list("cycles", lambda c: c.status == CycleStatus.ACTIVE)
        base = max(active, key=lambda c: (c.year, c.month)) if active else self.current_cycle(today)

        batch = self._store.batch()
        closed_id = None
        now = datetime.now(timezone.utc)
        for cycle in active:
            cycle.status = CycleStatus.CLOSED
            cycle.closed_at = now
            batch.put("cycles", cycle)
            if cycle.cycle_id == base.cycle_id:
                closed_id = cycle.cycle_id

        year, month = next_month(base.year, base.month)
        upcoming = self._store.find("cycles", cycle_id_for(year, month)) or month_cycle(year, month)
        upcoming.status = CycleStatus.ACTIVE
        upcoming.closed_at = None
        batch.put("cycles", upcoming)
        batch.commit()

        logger.info(
            "Billing cycle rollover: closed %s, active %s",
            closed_id or "-", upcoming.cycle_id,
        )
        if self._hub is not None:
            self._hub.publish(
                ClinicEvent(
                    event_type=ClinicEventType.CYCLE_ROLLED_OVER,
                    payload={"closed": closed_id, "active": upcoming.cycle_id},
                )
            )
        return RolloverResult(closed_cycle_id=closed_id, active=upcoming)
