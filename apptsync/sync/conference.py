"""Conference link provisioning (Zoom, Google Meet) on top of the push flow."""

import logging
import uuid

from apptsync.errors import AlreadySynced, SyncError, SyncFailed, UnsupportedOperation
from apptsync.integrations.base import Capability
from apptsync.models.integration import CONFERENCE_PROVIDERS, Provider
from apptsync.models.sync import EventSpec, SyncResult, SyncResultKind
from apptsync.sync.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


class ConferenceProvisioner:
    """Attaches a meeting join URL to an appointment.

    Shares the engine's ledger, credential store and per-appointment locks, so
    a provision and a push for the same (appointment, provider) never overlap.
    """

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine

    def provision(self, appointment_id: str, user_id: str, provider) -> SyncResult:
        """Create (or refresh) the meeting for an appointment and return its join URL."""
        provider_value = str(getattr(provider, "value", provider))
        try:
            try:
                provider = Provider(provider)
            except ValueError:
                raise UnsupportedOperation(f"Unknown provider: {provider}")
            if provider not in CONFERENCE_PROVIDERS:
                raise UnsupportedOperation(f"{provider.value} does not provide conferencing")
            with self.engine.hold(appointment_id, provider):
                return self._provision(appointment_id, user_id, provider)
        except TimeoutError:
            return SyncResult(
                kind=SyncResultKind.SYNC_FAILED,
                provider=provider_value,
                appointment_id=appointment_id,
                message="Another sync of this appointment is still running",
            )
        except SyncError as e:
            if isinstance(e, SyncFailed):
                logger.error(f"Failed to provision {e.provider} meeting for appointment {appointment_id}: {e.cause}")
            return SyncResult.from_error(e, provider_value, appointment_id)

    def _provision(self, appointment_id: str, user_id: str, provider: Provider) -> SyncResult:
        engine = self.engine
        appointment, adapter, integration, access_token = engine.prepare(
            appointment_id, user_id, provider, Capability.CONFERENCING
        )
        spec = EventSpec.from_appointment(
            appointment,
            create_conference=True,
            request_id=f"{appointment_id}-{uuid.uuid4().hex}",
        )

        entry = engine.ledger.find_by_appointment(appointment_id, provider.value)
        if entry is None or entry.is_claim:
            try:
                claim = engine.claim_slot(user_id, appointment_id, integration, provider)
            except AlreadySynced:
                entry = engine.completed_entry(appointment_id, provider)
                if entry is None:
                    raise
            else:
                event = engine.create_on_claim(adapter, access_token, spec, claim, require_join_url=True)
                engine.appointments.set_video(appointment_id, event.join_url, provider.value)
                logger.info(f"Provisioned {provider.value} meeting {event.id} for appointment {appointment_id}")
                return SyncResult.success(
                    provider.value,
                    appointment_id,
                    external_event_id=event.id,
                    join_url=event.join_url,
                    created=True,
                )

        # Already provisioned: move the meeting to the current time/title and keep its URL.
        try:
            event = adapter.update_event(access_token, entry.external_event_id, spec)
        except SyncError as e:
            raise SyncFailed(provider.value, e) from e
        current = engine.appointments.get(appointment_id)
        join_url = event.join_url or (current.video_url if current else None)
        if join_url and (current is None or current.video_url != join_url or current.video_platform != provider.value):
            engine.appointments.set_video(appointment_id, join_url, provider.value)
        return SyncResult.success(
            provider.value,
            appointment_id,
            external_event_id=entry.external_event_id,
            join_url=join_url,
        )
