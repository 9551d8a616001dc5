"""
Clinic Store — patient/clinician directories plus appointment, billing,
package and billing-cycle collections.

In-memory by default. When given a ``GCSBucketManager`` the whole clinic
state is persisted as one JSON snapshot and saved with GCS
generation-based optimistic locking.

Storage path: gs://{bucket}/clinic_state/state.json

Reads hand out deep copies: callers work on a snapshot and must write
changes back through ``put``/``delete`` or a ``WriteBatch``.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, Field

from clinicflow import settings
from clinicflow.engine.models import (
    Appointment,
    BillingCycle,
    BillingRecord,
    Clinician,
    Package,
    PatientRecord,
)

logger = logging.getLogger("engine.store")


class RecordNotFoundError(Exception):
    """Raised when a record id does not exist in its collection."""


class StoreConcurrencyError(Exception):
    """The persisted snapshot was modified by another process."""


class BatchCommitError(Exception):
    """
    One or more operations of a WriteBatch failed.

    The batch has been rolled back; ``failed`` lists the operations
    that could not be applied.
    """

    def __init__(self, failed: list[str]) -> None:
        self.failed = failed
        super().__init__(f"{len(failed)} operation(s) failed: {'; '.join(failed)}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ClinicState(BaseModel):
    """Serialisable clinic snapshot."""

    patients: dict[str, PatientRecord] = Field(default_factory=dict)
    clinicians: dict[str, Clinician] = Field(default_factory=dict)
    appointments: dict[str, Appointment] = Field(default_factory=dict)
    billing: dict[str, BillingRecord] = Field(default_factory=dict)
    packages: dict[str, Package] = Field(default_factory=dict)
    cycles: dict[str, BillingCycle] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=_now)


# collection name -> id attribute of its records
KEY_FIELDS = {
    "patients": "patient_id",
    "clinicians": "clinician_id",
    "appointments": "appointment_id",
    "billing": "billing_id",
    "packages": "package_id",
    "cycles": "cycle_id",
}


@dataclass
class BatchOp:
    action: str  # "put" / "delete"
    collection: str
    key: str
    record: Optional[BaseModel] = None

    def describe(self) -> str:
        return f"{self.action} {self.collection}/{self.key}"


class WriteBatch:
    """
    Stages writes and applies them together.

    ``commit()`` attempts every operation; if any fails, the ones that
    succeeded are undone and ``BatchCommitError`` lists the failures.
    """

    def __init__(self, store: ClinicStore) -> None:
        self._store = store
        self._ops: list[BatchOp] = []

    def put(self, collection: str, record: BaseModel) -> WriteBatch:
        key = getattr(record, KEY_FIELDS[collection])
        self._ops.append(BatchOp("put", collection, key, record.model_copy(deep=True)))
        return self

    def delete(self, collection: str, key: str) -> WriteBatch:
        self._ops.append(BatchOp("delete", collection, key))
        return self

    @property
    def operations(self) -> list[BatchOp]:
        return list(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> int:
        """Apply all staged operations. Returns the number applied."""
        return self._store.commit_batch(self._ops)


class ClinicStore:
    """
    Persistent clinic store.

    When ``gcs_bucket_manager`` is None, operates in-memory (test mode).
    """

    def __init__(
        self,
        gcs_bucket_manager=None,
        blob_path: str = settings.STATE_BLOB_PATH,
    ) -> None:
        self._gcs = gcs_bucket_manager
        self._blob_path = blob_path
        self._lock = threading.RLock()
        self._state = ClinicState()
        self._generation: int | None = None
        self._load()

    # ── Generic collection access ──

    def get(self, collection: str, key: str) -> Any:
        with self._lock:
            record = self._collection(collection).get(key)
            if record is None:
                raise RecordNotFoundError(f"No {collection} record '{key}'")
            return record.model_copy(deep=True)

    def find(self, collection: str, key: str) -> Any:
        """Like get() but returns None for a missing record."""
        try:
            return self.get(collection, key)
        except RecordNotFoundError:
            return None

    def list(
        self, collection: str, predicate: Callable[[Any], bool] | None = None
    ) -> list[Any]:
        with self._lock:
            records = self._collection(collection).values()
            return [
                r.model_copy(deep=True)
                for r in records
                if predicate is None or predicate(r)
            ]

    def put(self, collection: str, record: BaseModel) -> None:
        self.batch().put(collection, record).commit()

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            if key not in self._collection(collection):
                raise RecordNotFoundError(f"No {collection} record '{key}'")
            self.batch().delete(collection, key).commit()

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def commit_batch(self, ops: Iterable[BatchOp]) -> int:
        ops = list(ops)
        if not ops:
            return 0

        with self._lock:
            undo: list[tuple[str, str, Optional[BaseModel]]] = []
            failed: list[str] = []

            for op in ops:
                previous = self._collection(op.collection).get(op.key)
                try:
                    self._apply(op)
                except Exception as exc:
                    logger.warning("Batch operation failed: %s (%s)", op.describe(), exc)
                    failed.append(f"{op.describe()}: {exc}")
                    continue
                undo.append((op.collection, op.key, previous))

            if failed:
                for collection, key, previous in reversed(undo):
                    target = self._collection(collection)
                    if previous is None:
                        target.pop(key, None)
                    else:
                        target[key] = previous
                logger.error(
                    "Rolled back batch of %d operation(s); %d failed",
                    len(ops), len(failed),
                )
                raise BatchCommitError(failed)

            self._save()
            return len(ops)

    # ── Directories ──

    def get_patient(self, patient_id: str) -> PatientRecord:
        return self.get("patients", patient_id)

    def put_patient(self, patient: PatientRecord) -> None:
        self.put("patients", patient)

    def get_clinician(self, clinician_id: str) -> Clinician:
        return self.get("clinicians", clinician_id)

    def put_clinician(self, clinician: Clinician) -> None:
        self.put("clinicians", clinician)

    # ── Appointments ──

    def get_appointment(self, appointment_id: str) -> Appointment:
        return self.get("appointments", appointment_id)

    def put_appointment(self, appointment: Appointment) -> None:
        self.put("appointments", appointment)

    def appointments(
        self,
        *,
        patient_id: str | None = None,
        clinician_id: str | None = None,
        day: date | None = None,
    ) -> list[Appointment]:
        def _match(a: Appointment) -> bool:
            if patient_id is not None and a.patient_id != patient_id:
                return False
            if clinician_id is not None and a.clinician_id != clinician_id:
                return False
            if day is not None and a.date != day:
                return False
            return True

        return self.list("appointments", _match)

    # ── Billing ──

    def put_billing(self, record: BillingRecord) -> None:
        self.put("billing", record)

    def billing_for_appointment(self, appointment_id: str) -> list[BillingRecord]:
        return self.list("billing", lambda b: b.appointment_id == appointment_id)

    def billed_appointment_ids(self) -> set[str]:
        with self._lock:
            return {
                b.appointment_id
                for b in self._state.billing.values()
                if b.appointment_id
            }

    # ── Packages ──

    def packages_for(self, patient_id: str) -> list[Package]:
        packages = self.list("packages", lambda p: p.patient_id == patient_id)
        return sorted(packages, key=lambda p: p.created_at)

    # ── Internal ──

    def _collection(self, name: str) -> dict[str, Any]:
        if name not in KEY_FIELDS:
            raise KeyError(f"Unknown collection '{name}'")
        return getattr(self._state, name)

    def _apply(self, op: BatchOp) -> None:
        target = self._collection(op.collection)
        if op.action == "put":
            target[op.key] = op.record
        elif op.action == "delete":
            if op.key not in target:
                raise RecordNotFoundError(f"No {op.collection} record '{op.key}'")
            del target[op.key]
        else:
            raise ValueError(f"Unknown batch action '{op.action}'")

    def _load(self) -> None:
        """Load the snapshot from GCS (in-memory mode keeps current state)."""
        if self._gcs is None:
            return

        self._gcs._ensure_initialized()
        blob = self._gcs.bucket.blob(self._blob_path)
        if not blob.exists():
            self._state = ClinicState()
            self._generation = None
            return

        content = blob.download_as_text()
        self._generation = blob.generation or 0
        self._state = ClinicState.model_validate(json.loads(content))
        logger.info(
            "Loaded clinic state: %d patients, %d appointments, %d billing records",
            len(self._state.patients),
            len(self._state.appointments),
            len(self._state.billing),
        )

    def refresh(self) -> None:
        with self._lock:
            self._load()

    def _save(self) -> None:
        """Save the snapshot to GCS (or just stamp in-memory state)."""
        self._state.last_updated = _now()

        if self._gcs is None:
            return

        blob = self._gcs.bucket.blob(self._blob_path)
        content = self._state.model_dump_json(indent=2)
        try:
            if self._generation is not None:
                blob.upload_from_string(
                    content,
                    content_type="application/json",
                    if_generation_match=self._generation,
                )
            else:
                blob.upload_from_string(content, content_type="application/json")
            blob.reload()
            self._generation = blob.generation or 0
        except Exception as exc:
            if "conditionNotMet" in str(exc) or "Precondition" in str(exc):
                logger.warning("Clinic state concurrency conflict — reloading")
                self._load()
                raise StoreConcurrencyError(
                    "Clinic state was modified by another process; retry the operation"
                ) from exc
            raise
