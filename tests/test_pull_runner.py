"""Tests for the background pull runner."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from apptsync.database.models import AppointmentDB
from apptsync.models.integration import Provider
from apptsync.models.sync import ExternalEvent
from apptsync.sync.pull_runner import PullRunner, pull_all_active
from apptsync.timeutil import utcnow

from conftest import provider_error


@pytest.fixture
def session_factory(db_session):
    """Fresh sessions on the same in-memory database."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_session.get_bind())


def _upcoming(event_id):
    start = utcnow().replace(microsecond=0) + timedelta(days=1)
    return ExternalEvent(id=event_id, title="Remote", start=start, end=start + timedelta(hours=1))


def test_pulls_every_active_listing_integration(
    session_factory, registry, settings, connect, fake_google, fake_microsoft, fake_zoom, db_session, other_user_id
):
    connect(Provider.GOOGLE_CALENDAR)
    connect(Provider.GOOGLE_CALENDAR, user_id=other_user_id)
    connect(Provider.MICROSOFT_CALENDAR)
    connect(Provider.ZOOM)
    fake_google.listing = [_upcoming("g-1")]

    results = pull_all_active(session_factory, registry, settings)

    assert sorted(r.provider for r in results) == ["google_calendar", "google_calendar", "microsoft_calendar"]
    assert len(fake_google.list_windows) == 2
    assert len(fake_microsoft.list_windows) == 1
    assert db_session.query(AppointmentDB).count() == 2


def test_inactive_integrations_are_skipped(session_factory, registry, settings, connect, credential_store, fake_google, test_user_id):
    connect(Provider.GOOGLE_CALENDAR)
    credential_store.integrations.deactivate(credential_store.integrations.get(test_user_id, "google_calendar"))

    assert pull_all_active(session_factory, registry, settings) == []
    assert fake_google.list_windows == []


def test_one_failure_does_not_stop_the_rest(session_factory, registry, settings, connect, fake_google, fake_microsoft):
    connect(Provider.GOOGLE_CALENDAR)
    connect(Provider.MICROSOFT_CALENDAR)
    fake_google.list_error = provider_error(500)
    fake_microsoft.listing = [_upcoming("m-1")]

    results = {r.provider: r for r in pull_all_active(session_factory, registry, settings)}

    assert results["google_calendar"].error
    assert results["microsoft_calendar"].imported_count == 1


def test_unexpected_exception_is_reported(session_factory, registry, settings, connect):
    connect(Provider.GOOGLE_CALENDAR)

    with patch("apptsync.sync.pull_runner.ReconciliationEngine.pull", side_effect=RuntimeError("boom")):
        results = pull_all_active(session_factory, registry, settings)

    assert len(results) == 1
    assert results[0].error == "RuntimeError"


def test_runner_with_zero_interval_never_starts(session_factory, registry, settings):
    runner = PullRunner(session_factory, registry, settings, interval_sec=0)
    runner.start()
    assert runner.running is False


def test_runner_thread_starts_and_stops(session_factory, registry, settings):
    runner = PullRunner(session_factory, registry, settings, interval_sec=60)
    runner.start()
    try:
        assert runner.running is True
    finally:
        runner.stop(timeout=1)
    assert runner.running is False
