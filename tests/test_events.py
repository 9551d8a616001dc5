"""
Tests for the NotificationHub.
"""

from clinicflow.engine.events import ClinicEvent, ClinicEventType, NotificationHub


def event(patient_id="PT-1", event_type=ClinicEventType.BILLING_CREATED) -> ClinicEvent:
    return ClinicEvent(event_type=event_type, patient_id=patient_id)


class TestNotificationHub:

    def test_publish_reaches_subscribers(self):
        hub = NotificationHub()
        received = []
        hub.subscribe(received.append)
        assert hub.publish(event()) == 1
        assert received[0].event_type == ClinicEventType.BILLING_CREATED

    def test_failing_subscriber_isolated(self):
        hub = NotificationHub()
        received = []

        def broken(_event):
            raise RuntimeError("mailer down")

        hub.subscribe(broken)
        hub.subscribe(received.append)

        assert hub.publish(event()) == 1
        assert len(received) == 1

    def test_unsubscribe(self):
        hub = NotificationHub()
        received = []
        hub.subscribe(received.append)
        hub.unsubscribe(received.append)
        hub.publish(event())
        assert received == []

    def test_log_per_patient(self):
        hub = NotificationHub()
        hub.publish(event("PT-1"))
        hub.publish(event("PT-2", ClinicEventType.PACKAGE_PURCHASED))
        hub.publish(event("PT-1", ClinicEventType.APPOINTMENT_BOOKED))

        assert [e.event_type for e in hub.get_events("PT-1")] == [
            ClinicEventType.BILLING_CREATED, ClinicEventType.APPOINTMENT_BOOKED,
        ]
        assert len(hub.get_events("PT-1", ClinicEventType.APPOINTMENT_BOOKED)) == 1
        assert hub.get_events("PT-3") == []

    def test_clear(self):
        hub = NotificationHub()
        hub.publish(event("PT-1"))
        hub.publish(event("PT-2"))
        hub.clear("PT-1")
        assert hub.get_events("PT-1") == []
        assert len(hub.get_events("PT-2")) == 1
        hub.clear()
        assert hub.get_events("PT-2") == []

    def test_log_keeps_most_recent_events(self):
        hub = NotificationHub(log_limit=3)
        for n in range(5):
            hub.publish(ClinicEvent(
                event_type=ClinicEventType.BILLING_CREATED, patient_id="PT-1", payload={"n": n},
            ))
        hub.publish(event("PT-2"))

        assert [e.payload["n"] for e in hub.get_events("PT-1")] == [2, 3, 4]
        assert len(hub.get_events("PT-2")) == 1

    def test_log_limit_from_settings(self, monkeypatch):
        from clinicflow import settings

        monkeypatch.setattr(settings, "EVENT_LOG_LIMIT", 2)
        hub = NotificationHub()
        for _ in range(4):
            hub.publish(event())
        assert len(hub.get_events("PT-1")) == 2

    def test_log_disabled(self):
        hub = NotificationHub(keep_log=False)
        hub.publish(event())
        assert hub.get_events("PT-1") == []

    def test_status_changed_factory(self):
        e = ClinicEvent.status_changed("PT-1", "APT-1", "pending", "completed")
        assert e.event_type == ClinicEventType.STATUS_CHANGED
        assert e.payload == {"old_status": "pending", "new_status": "completed"}
