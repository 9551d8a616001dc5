"""
Tests for billing — the category rule table, the completed-appointment
sync (reconciliation), bulk import, payments, and corrections.
"""

from datetime import date

import pytest

from clinicflow import settings
from clinicflow.engine.billing import (
    BILLING_RULES,
    PaymentError,
    evaluate,
    export_csv,
    read_import_csv,
)
from clinicflow.engine.models import (
    Appointment,
    AppointmentStatus,
    BillingRecord,
    BillingStatus,
    PatientCategory,
    PaymentType,
)

from conftest import WEDNESDAY, make_patient

STANDARD = settings.STANDARD_SESSION_RATE


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Rule table
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRuleTable:

    def test_every_category_has_a_rule(self):
        assert set(BILLING_RULES) == set(PatientCategory)

    def test_referral(self):
        decision = evaluate(make_patient(category=PatientCategory.REFERRAL))
        assert decision.amount == 0
        assert decision.status == BillingStatus.COMPLETED
        assert decision.payment_mode == "N/A"

    def test_vip_zeroed_but_standard_recorded(self):
        decision = evaluate(make_patient(category=PatientCategory.VIP))
        assert decision.amount == 0
        assert decision.standard_amount == STANDARD
        assert decision.status == BillingStatus.AUTO_PAID

    def test_paid_with_default_concession(self):
        patient = make_patient(payment_type=PaymentType.WITH_CONCESSION)
        decision = evaluate(patient)
        assert decision.amount == pytest.approx(STANDARD * (1 - settings.DEFAULT_CONCESSION_PERCENT / 100))
        assert decision.status == BillingStatus.PENDING

    def test_paid_with_custom_concession(self):
        patient = make_patient(payment_type=PaymentType.WITH_CONCESSION, concession_percent=50)
        assert evaluate(patient).amount == pytest.approx(STANDARD / 2)

    def test_paid_without_concession(self):
        decision = evaluate(make_patient(payment_type=PaymentType.WITHOUT_CONCESSION))
        assert decision.amount == STANDARD
        assert decision.status == BillingStatus.PENDING

    def test_subsidized_flat_fee(self):
        decision = evaluate(make_patient(category=PatientCategory.SUBSIDIZED))
        assert decision.amount == settings.SUBSIDIZED_FLAT_FEE
        assert decision.status == BillingStatus.COMPLETED
        assert decision.payment_mode == "Auto-Paid"

    @pytest.mark.parametrize("category", [
        PatientCategory.AFFILIATE, PatientCategory.STAFF, PatientCategory.OTHER,
    ])
    def test_remaining_categories_bill_like_paid_without_concession(self, category):
        other = evaluate(make_patient(category=category))
        paid = evaluate(make_patient(payment_type=PaymentType.WITHOUT_CONCESSION))
        assert other == paid

    def test_appointment_rate_overrides_standard(self):
        appointment = Appointment(patient_id="PT-100", amount=900)
        assert evaluate(make_patient(), appointment).amount == 900

    def test_zero_appointment_rate_is_kept(self):
        appointment = Appointment(patient_id="PT-100", amount=0)
        decision = evaluate(make_patient(), appointment)
        assert decision.amount == 0
        assert decision.standard_amount == 0

    @pytest.mark.parametrize("label,expected", [
        ("DYES", PatientCategory.SUBSIDIZED),
        ("Referral", PatientCategory.REFERRAL),
        ("Gethhma", PatientCategory.AFFILIATE),
        ("mystery", PatientCategory.OTHER),
        ("", PatientCategory.OTHER),
    ])
    def test_free_text_labels(self, label, expected):
        assert make_patient(category=label).category == expected


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Sync / reconciliation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _completed(engine, patient_id="PT-100", time="10:00") -> Appointment:
    appointment = Appointment(
        patient_id=patient_id,
        patient_name=f"Patient {patient_id}",
        clinician_id="DR-1",
        clinician_name="Dr. Rao",
        date=WEDNESDAY,
        time=time,
        status=AppointmentStatus.COMPLETED,
    )
    engine.store.put_appointment(appointment)
    return appointment


class TestSync:

    def test_creates_missing_records(self, engine, add_patient):
        add_patient("PT-100")
        appointment = _completed(engine)

        report = engine.billing.sync_completed_appointments()

        assert len(report.created) == 1
        [record] = engine.store.billing_for_appointment(appointment.appointment_id)
        assert record.amount == STANDARD
        assert record.date == WEDNESDAY
        assert record.clinician_name == "Dr. Rao"

    def test_idempotent(self, engine, add_patient):
        add_patient("PT-100")
        _completed(engine, time="10:00")
        _completed(engine, time="11:00")

        first = engine.billing.sync_completed_appointments()
        second = engine.billing.sync_completed_appointments()

        assert len(first.created) == 2
        assert second.created == []
        assert second.already_billed == 2
        assert len(engine.billing.records()) == 2

    def test_missing_patient_reported_not_billed(self, engine):
        appointment = _completed(engine, patient_id="PT-GHOST")
        report = engine.billing.sync_completed_appointments()
        assert report.missing_patients == [appointment.appointment_id]
        assert engine.billing.records() == []

    def test_non_completed_ignored(self, engine, add_patient):
        add_patient("PT-100")
        engine.store.put_appointment(
            Appointment(patient_id="PT-100", clinician_id="DR-1", date=WEDNESDAY, time="10:00")
        )
        assert engine.billing.sync_completed_appointments().created == []

    def test_pending_subsidized_record_corrected(self, engine, add_patient):
        add_patient("PT-DY", PatientCategory.SUBSIDIZED)
        stale = BillingRecord(
            appointment_id="APT-OLD",
            patient_id="PT-DY",
            amount=STANDARD,
            status=BillingStatus.PENDING,
            date=WEDNESDAY,
        )
        engine.store.put_billing(stale)

        report = engine.billing.sync_completed_appointments()

        assert report.corrected == [stale.billing_id]
        fixed = engine.billing.get(stale.billing_id)
        assert fixed.amount == settings.SUBSIDIZED_FLAT_FEE
        assert fixed.status == BillingStatus.COMPLETED
        assert fixed.corrected_at is not None

    def test_settled_records_never_rewritten(self, engine, add_patient):
        add_patient("PT-DY", PatientCategory.SUBSIDIZED)
        settled = BillingRecord(
            appointment_id="APT-OLD",
            patient_id="PT-DY",
            amount=750,
            status=BillingStatus.COMPLETED,
            date=WEDNESDAY,
        )
        engine.store.put_billing(settled)
        engine.billing.sync_completed_appointments()
        assert engine.billing.get(settled.billing_id).amount == 750


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Import
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestImport:

    def test_rows_imported_as_completed(self, engine):
        report = engine.billing.import_rows([
            {"Patient Name": "Asha", "Amount": "Rs. 1,500", "Date": "2024-05-01", "Doctor": "Dr. Rao"},
        ])
        [record] = report.imported
        assert record.billing_id.startswith("BILL-IMPORT-")
        assert record.patient_id.startswith("IMP-")
        assert record.patient_name == "Asha"
        assert record.amount == 1500
        assert record.date == date(2024, 5, 1)
        assert record.status == BillingStatus.COMPLETED
        assert record.clinician_name == "Dr. Rao"
        assert engine.billing.get(record.billing_id).amount == 1500

    def test_undated_rows_rejected(self, engine):
        report = engine.billing.import_rows([
            {"name": "Asha", "amount": "500", "date": "2024-05-01"},
            {"name": "Ravi", "amount": "500", "date": ""},
            {"name": "Mina", "amount": "500", "date": "soon"},
        ])
        assert len(report.imported) == 1
        assert [r.row_number for r in report.rejected] == [3, 4]
        assert len(engine.billing.records()) == 1

    def test_supplied_patient_id_kept(self, engine):
        report = engine.billing.import_rows([
            {"patient id": "PT-7", "name": "Asha", "amount": "500", "registration date": "01/05/2024"},
        ])
        assert report.imported[0].patient_id == "PT-7"
        assert report.imported[0].date == date(2024, 5, 1)

    def test_ids_unique_within_import(self, engine):
        rows = [{"name": f"P{n}", "amount": "100", "date": "2024-05-01"} for n in range(3)]
        ids = [r.billing_id for r in engine.billing.import_rows(rows).imported]
        assert len(set(ids)) == 3

    def test_read_import_csv(self):
        content = "Name , Amount,Date\nAsha,500,2024-05-01\n,,\nRavi,700,\n"
        rows = read_import_csv(content)
        assert rows == [
            {"name": "Asha", "amount": "500", "date": "2024-05-01"},
            {"name": "Ravi", "amount": "700", "date": ""},
        ]

    def test_read_import_csv_empty(self):
        assert read_import_csv("") == []

    def test_export_csv(self, engine):
        engine.billing.import_rows([{"name": "Asha", "amount": "500", "date": "2024-05-01"}])
        content = export_csv(engine.billing.records())
        header, row = content.strip().splitlines()
        assert header.startswith("billing_id,date,patient_id")
        assert "Asha" in row and "2024-05-01" in row


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Payments & corrections
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPayments:

    def _pending(self, engine, amount=STANDARD, patient_id="PT-100") -> BillingRecord:
        record = BillingRecord(patient_id=patient_id, amount=amount, date=WEDNESDAY)
        engine.store.put_billing(record)
        return record

    def test_pay_pending(self, engine):
        record = self._pending(engine)
        paid = engine.billing.record_payment(record.billing_id, "UPI/Card", reference="UTR123")
        assert paid.status == BillingStatus.COMPLETED
        assert paid.payment_mode == "UPI/Card"
        assert paid.payment_reference == "UTR123"
        assert paid.paid_at is not None
        assert paid.amount == STANDARD

    def test_pay_with_adjusted_amount(self, engine):
        record = self._pending(engine)
        assert engine.billing.record_payment(record.billing_id, "Cash", amount=1000).amount == 1000

    def test_settled_record_cannot_be_paid_again(self, engine):
        record = self._pending(engine)
        engine.billing.record_payment(record.billing_id, "Cash")
        with pytest.raises(PaymentError):
            engine.billing.record_payment(record.billing_id, "Cash", amount=1)
        assert engine.billing.get(record.billing_id).amount == STANDARD

    def test_negative_amount_rejected(self, engine):
        record = self._pending(engine)
        with pytest.raises(PaymentError):
            engine.billing.record_payment(record.billing_id, "Cash", amount=-5)

    def test_vip_correction(self, engine, add_patient):
        add_patient("PT-VIP", PatientCategory.VIP)
        record = self._pending(engine, patient_id="PT-VIP")

        corrected = engine.billing.apply_vip_corrections()

        assert corrected == [record.billing_id]
        fixed = engine.billing.get(record.billing_id)
        assert fixed.amount == 0
        assert fixed.standard_amount == STANDARD
        assert fixed.status == BillingStatus.AUTO_PAID
        assert engine.billing.apply_vip_corrections() == []

    def test_delete(self, engine):
        from clinicflow.engine.store import RecordNotFoundError

        record = self._pending(engine)
        engine.billing.delete(record.billing_id)
        with pytest.raises(RecordNotFoundError):
            engine.billing.get(record.billing_id)

    def test_delete_unknown_record(self, engine):
        from clinicflow.engine.store import RecordNotFoundError

        with pytest.raises(RecordNotFoundError):
            engine.billing.delete("BILL-NOPE")
