"""Tests for ConferenceProvisioner."""

import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from apptsync.database.models import CalendarSyncDB
from apptsync.integrations.registry import AdapterRegistry
from apptsync.integrations.zoom import ZoomAdapter
from apptsync.models.integration import Provider
from apptsync.models.sync import SyncResultKind
from apptsync.sync.conference import ConferenceProvisioner
from apptsync.sync.locks import KeyedLocks
from apptsync.sync.reconciliation import ReconciliationEngine

from conftest import provider_error


@pytest.fixture
def provisioner(engine):
    return ConferenceProvisioner(engine)


def test_zoom_duration_is_floor_minutes(db_session, settings, connect, make_appointment, appointment_repository, test_user_id):
    zoom = ZoomAdapter(settings.zoom, timeout=settings.http_timeout_sec)
    engine = ReconciliationEngine(db_session, AdapterRegistry([zoom]), settings, locks=KeyedLocks())
    connect(Provider.ZOOM)
    appointment_id = make_appointment("Driving Lesson", datetime(2030, 1, 15, 9, 0), datetime(2030, 1, 15, 9, 45))

    response = MagicMock()
    response.ok = True
    response.status_code = 201
    response.json.return_value = {
        "id": 81234567890,
        "topic": "Driving Lesson",
        "start_time": "2030-01-15T09:00:00Z",
        "join_url": "https://zoom.us/j/81234567890",
    }
    with patch("apptsync.integrations.zoom.requests.request", return_value=response) as mock_request:
        result = ConferenceProvisioner(engine).provision(appointment_id, test_user_id, Provider.ZOOM)

    assert result.ok
    assert result.join_url == "https://zoom.us/j/81234567890"
    args, kwargs = mock_request.call_args
    assert args[0] == "POST"
    assert args[1].endswith("/users/me/meetings")
    assert kwargs["timeout"] == settings.http_timeout_sec
    payload = kwargs["json"]
    assert payload["duration"] == 45
    assert payload["type"] == 2
    assert payload["start_time"] == "2030-01-15T09:00:00Z"
    assert payload["settings"]["waiting_room"] is True
    assert payload["settings"]["join_before_host"] is False

    appointment = appointment_repository.get(appointment_id)
    assert appointment.video_url == "https://zoom.us/j/81234567890"
    assert appointment.video_platform == "zoom"
    entry = db_session.query(CalendarSyncDB).one()
    assert entry.provider == "zoom"
    assert entry.external_event_id == "81234567890"


def test_meet_rides_on_google_calendar_integration(
    provisioner, connect, fake_meet, driving_lesson, appointment_repository, db_session, test_user_id
):
    google = connect(Provider.GOOGLE_CALENDAR)

    result = provisioner.provision(driving_lesson, test_user_id, Provider.GOOGLE_MEET)

    assert result.ok and result.created
    assert result.join_url.startswith("https://meet.example.test/")
    spec = fake_meet.created[0]
    assert spec.create_conference is True
    assert spec.request_id.startswith(f"{driving_lesson}-")

    entry = db_session.query(CalendarSyncDB).one()
    assert entry.provider == "google_meet"
    assert entry.integration_id == google.id
    appointment = appointment_repository.get(driving_lesson)
    assert appointment.video_url == result.join_url
    assert appointment.video_platform == "google_meet"
    # A conference mirror is not a calendar mirror.
    assert appointment.calendar_synced is False


def test_meet_without_google_connection(provisioner, connect, fake_meet, driving_lesson, test_user_id):
    connect(Provider.ZOOM)

    result = provisioner.provision(driving_lesson, test_user_id, Provider.GOOGLE_MEET)

    assert result.kind == SyncResultKind.NOT_CONNECTED
    assert fake_meet.created == []


def test_missing_join_url_is_cleaned_up(provisioner, connect, fake_zoom, driving_lesson, db_session, test_user_id):
    connect(Provider.ZOOM)
    fake_zoom.join_url_base = None

    result = provisioner.provision(driving_lesson, test_user_id, Provider.ZOOM)

    assert result.kind == SyncResultKind.SYNC_FAILED
    assert fake_zoom.deleted == ["zoom-evt-1"]
    assert db_session.query(CalendarSyncDB).count() == 0


def test_second_provision_updates_and_keeps_url(
    provisioner, connect, fake_zoom, driving_lesson, appointment_repository, test_user_id
):
    connect(Provider.ZOOM)
    first = provisioner.provision(driving_lesson, test_user_id, Provider.ZOOM)

    second = provisioner.provision(driving_lesson, test_user_id, Provider.ZOOM)

    assert second.ok and second.created is False
    assert second.join_url == first.join_url
    assert len(fake_zoom.created) == 1
    assert fake_zoom.updated == [first.external_event_id]
    assert appointment_repository.get(driving_lesson).video_url == first.join_url


def test_create_failure_releases_claim(provisioner, connect, fake_zoom, driving_lesson, db_session, test_user_id):
    connect(Provider.ZOOM)
    fake_zoom.create_error = provider_error(429)

    result = provisioner.provision(driving_lesson, test_user_id, Provider.ZOOM)

    assert result.kind == SyncResultKind.SYNC_FAILED
    assert db_session.query(CalendarSyncDB).count() == 0


def test_calendar_provider_is_unsupported(provisioner, connect, driving_lesson, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)

    result = provisioner.provision(driving_lesson, test_user_id, Provider.GOOGLE_CALENDAR)

    assert result.kind == SyncResultKind.UNSUPPORTED


def test_missing_appointment(provisioner, connect, test_user_id):
    connect(Provider.ZOOM)

    assert provisioner.provision("missing", test_user_id, Provider.ZOOM).kind == SyncResultKind.NOT_FOUND


def test_zoom_reply_without_meeting_id_is_sync_failed(
    db_session, settings, connect, driving_lesson, appointment_repository, test_user_id
):
    engine = ReconciliationEngine(db_session, AdapterRegistry([ZoomAdapter(settings.zoom)]), settings, locks=KeyedLocks())
    connect(Provider.ZOOM)
    response = MagicMock(status_code=201, ok=True)
    response.json.return_value = {"uuid": "x", "join_url": "https://zoom.us/j/1"}

    with patch("apptsync.integrations.zoom.requests.request", return_value=response):
        result = ConferenceProvisioner(engine).provision(driving_lesson, test_user_id, Provider.ZOOM)

    assert result.kind == SyncResultKind.SYNC_FAILED
    assert db_session.query(CalendarSyncDB).count() == 0
    assert appointment_repository.get(driving_lesson).video_url is None


def test_provisioning_runs_through_the_engine_steps(engine, provisioner, connect, fake_zoom, driving_lesson, test_user_id):
    connect(Provider.ZOOM)

    with patch.object(engine, "claim_slot", wraps=engine.claim_slot) as claim_slot, patch.object(
        engine, "create_on_claim", wraps=engine.create_on_claim
    ) as create_on_claim:
        result = provisioner.provision(driving_lesson, test_user_id, Provider.ZOOM)

    assert result.ok
    claim_slot.assert_called_once()
    _, kwargs = create_on_claim.call_args
    assert kwargs["require_join_url"] is True


def test_provision_that_lost_its_claim_keeps_the_takers_meeting(
    engine, provisioner, connect, fake_zoom, driving_lesson, db_session, registry, settings,
    credential_store, appointment_repository, test_user_id,
):
    connect(Provider.ZOOM)
    other = ConferenceProvisioner(
        ReconciliationEngine(db_session, registry, settings, credentials=credential_store, locks=KeyedLocks())
    )
    outcome = {}

    def stall_until_taken_over(spec):
        fake_zoom.on_create = None
        row = db_session.query(CalendarSyncDB).filter(CalendarSyncDB.appointment_id == driving_lesson).one()
        row.updated_at = datetime.utcnow() - timedelta(seconds=settings.sync_claim_stale_sec + 60)
        db_session.commit()
        outcome["taker"] = other.provision(driving_lesson, test_user_id, Provider.ZOOM)

    fake_zoom.on_create = stall_until_taken_over

    slow = provisioner.provision(driving_lesson, test_user_id, Provider.ZOOM)

    taker = outcome["taker"]
    assert taker.ok
    assert slow.kind == SyncResultKind.ALREADY_SYNCED
    assert fake_zoom.deleted == ["zoom-evt-2"]
    assert db_session.query(CalendarSyncDB).one().external_event_id == taker.external_event_id
    assert appointment_repository.get(driving_lesson).video_url == taker.join_url
