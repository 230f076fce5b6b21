"""Tests for ReconciliationEngine.pull."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

from apptsync.database.integration_repository import IntegrationRepository
from apptsync.database.models import AppointmentDB, CalendarSyncDB
from apptsync.integrations.microsoft_calendar import MicrosoftCalendarAdapter
from apptsync.integrations.registry import AdapterRegistry
from apptsync.models.integration import Provider, TokenSet
from apptsync.models.sync import ExternalEvent
from apptsync.sync.credential_store import CredentialStore
from apptsync.sync.locks import KeyedLocks
from apptsync.sync.reconciliation import ReconciliationEngine
from apptsync.timeutil import utcnow

from conftest import provider_error


def _event(event_id, title="Remote", start_in_hours=24, duration_hours=1, **kwargs):
    start = utcnow().replace(microsecond=0) + timedelta(hours=start_in_hours)
    return ExternalEvent(id=event_id, title=title, start=start, end=start + timedelta(hours=duration_hours), **kwargs)


def test_not_connected_is_a_no_op(engine, fake_google, test_user_id):
    result = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert result.connected is False
    assert result.imported_count == 0
    assert fake_google.list_windows == []


def test_imports_only_unmirrored_events(engine, connect, fake_google, driving_lesson, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    pushed = engine.push(driving_lesson, test_user_id, Provider.GOOGLE_CALENDAR)
    fake_google.listing = [
        _event(pushed.external_event_id, title="Driving Lesson"),
        _event("remote-new", title="Theory Test", location="Town Hall", notes="Bring ID"),
    ]

    result = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert result.ok
    assert result.imported_count == 1
    assert result.already_mirrored_count == 1
    assert db_session.query(AppointmentDB).count() == 2

    imported = db_session.query(AppointmentDB).filter(AppointmentDB.id == result.imported_appointment_ids[0]).one()
    assert imported.title == "Theory Test"
    assert imported.location == "Town Hall"
    assert imported.notes == "Bring ID"
    assert imported.calendar_synced is True
    entry = db_session.query(CalendarSyncDB).filter(CalendarSyncDB.external_event_id == "remote-new").one()
    assert entry.appointment_id == imported.id
    assert entry.provider == "google_calendar"


def test_pull_window_is_thirty_days(engine, connect, fake_google, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)

    engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    start, end = fake_google.list_windows[0]
    assert end - start == timedelta(days=30)
    assert abs((start - utcnow()).total_seconds()) < 60


def test_second_pull_imports_nothing(engine, connect, fake_google, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    fake_google.listing = [_event("remote-1"), _event("remote-2", start_in_hours=48)]

    first = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)
    second = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert first.imported_count == 2
    assert second.imported_count == 0
    assert second.already_mirrored_count == 2
    assert db_session.query(AppointmentDB).count() == 2


def test_untitled_event_gets_default_title(engine, connect, fake_microsoft, db_session, test_user_id):
    connect(Provider.MICROSOFT_CALENDAR)
    fake_microsoft.listing = [_event("ms-1", title=None)]

    engine.pull(test_user_id, Provider.MICROSOFT_CALENDAR)

    assert db_session.query(AppointmentDB).one().title == "Untitled Event"


def test_events_without_times_are_skipped(engine, connect, fake_google, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    fake_google.listing = [ExternalEvent(id="all-day", title="Holiday"), _event("timed")]

    result = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert result.skipped_count == 1
    assert result.imported_count == 1
    assert db_session.query(AppointmentDB).one().title == "Remote"


def test_pull_never_touches_existing_appointments(engine, connect, fake_google, driving_lesson, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    pushed = engine.push(driving_lesson, test_user_id, Provider.GOOGLE_CALENDAR)
    fake_google.listing = [_event(pushed.external_event_id, title="Renamed remotely")]

    engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert db_session.query(AppointmentDB).filter(AppointmentDB.id == driving_lesson).one().title == "Driving Lesson"


def test_list_failure_is_reported_not_raised(engine, connect, fake_google, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    fake_google.list_error = provider_error(500)

    result = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert result.connected is True
    assert result.error
    assert db_session.query(AppointmentDB).count() == 0


def test_provider_without_listing_is_reported(engine, connect, test_user_id):
    connect(Provider.ZOOM)

    result = engine.pull(test_user_id, Provider.ZOOM)

    assert not result.ok
    assert result.imported_count == 0


def test_concurrent_import_counts_as_mirrored(engine, connect, fake_google, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    fake_google.listing = [_event("remote-1")]
    engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    # A second puller that looked before the first one committed.
    with patch.object(engine.ledger, "find_by_external_id", return_value=None):
        result = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert result.imported_count == 0
    assert result.already_mirrored_count == 1
    assert db_session.query(AppointmentDB).count() == 1
    assert db_session.query(CalendarSyncDB).count() == 1


def test_pull_records_last_synced_at(engine, connect, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)

    engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    row = IntegrationRepository(db_session).get(test_user_id, "google_calendar")
    assert row.last_synced_at is not None


def test_undecodable_listing_is_reported_not_raised(engine, connect, fake_google, db_session, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    fake_google.list_error = ValueError("Invalid isoformat string: 'tomorrow-ish'")

    result = engine.pull(test_user_id, Provider.GOOGLE_CALENDAR)

    assert not result.ok
    assert "ValueError" in result.error
    assert db_session.query(AppointmentDB).count() == 0


def _graph_event(event_id, start, subject="Remote", **overrides):
    event = {
        "id": event_id,
        "subject": subject,
        "start": {"dateTime": start, "timeZone": "UTC"},
        "end": {"dateTime": "2099-01-01T00:00:00.0000000", "timeZone": "UTC"},
    }
    event.update(overrides)
    return event


def test_pull_through_graph_skips_malformed_events(db_session, settings, test_user_id):
    registry = AdapterRegistry([MicrosoftCalendarAdapter(settings.microsoft)])
    credentials = CredentialStore(db_session, registry, settings, locks=KeyedLocks())
    credentials.save(
        test_user_id,
        Provider.MICROSOFT_CALENDAR,
        TokenSet(access_token="ms-token", expires_at=utcnow() + timedelta(hours=1)),
    )
    engine = ReconciliationEngine(db_session, registry, settings, credentials=credentials, locks=KeyedLocks())

    start = (utcnow() + timedelta(days=1)).replace(microsecond=0)
    good = _graph_event("m-good", start.isoformat() + ".0000000", subject="Lesson")
    good["end"]["dateTime"] = (start + timedelta(hours=1)).isoformat() + ".0000000"
    page = MagicMock()
    page.status_code = 200
    page.ok = True
    page.json.return_value = {
        "value": [
            good,
            _graph_event("m-bad", "tomorrow-ish"),
            {"subject": "no id", "start": {"dateTime": start.isoformat()}},
        ]
    }

    with patch("apptsync.integrations.microsoft_calendar.requests.request", return_value=page):
        result = engine.pull(test_user_id, Provider.MICROSOFT_CALENDAR)

    assert result.ok
    assert result.imported_count == 1
    assert result.skipped_count == 1
    imported = db_session.query(AppointmentDB).one()
    assert imported.title == "Lesson"
    assert imported.start_time == start
    assert db_session.query(CalendarSyncDB).one().external_event_id == "m-good"
