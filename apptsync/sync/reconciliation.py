"""Push, pull and delete reconciliation between local appointments and provider calendars.

The relational store is the source of truth. A push reserves the ledger slot
(a claim row with no external ID) before asking the provider to create
anything, so two racing pushes for the same appointment cannot both create a
remote event: the loser's claim hits the unique (appointment_id, provider)
constraint and it never calls the provider.
"""

import logging
from datetime import timedelta
from typing import List, Optional, Tuple
from sqlalchemy.orm import Session

from apptsync.config import SyncSettings, get_settings
from apptsync.database.appointment_repository import AppointmentRepository
from apptsync.database.integration_repository import IntegrationRepository
from apptsync.database.models import IntegrationDB
from apptsync.database.sync_ledger_repository import SyncLedgerRepository
from apptsync.errors import (
    AlreadySynced,
    ImportSkipped,
    NotConnected,
    NotFound,
    ProviderError,
    SyncError,
    SyncFailed,
    UnsupportedOperation,
)
from apptsync.integrations.base import Capability, ProviderAdapter
from apptsync.integrations.registry import AdapterRegistry
from apptsync.models.appointment import Appointment
from apptsync.models.integration import CONFERENCE_PROVIDERS, Provider
from apptsync.models.sync import EventSpec, ExternalEvent, LedgerEntry, PullResult, SyncResult, SyncResultKind
from apptsync.sync.credential_store import CredentialStore
from apptsync.sync.locks import KeyedLocks
from apptsync.timeutil import utcnow

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"

_GONE_STATUSES = (404, 410)

# Shared by every engine in the process: one push/provision/delete per (appointment, provider).
push_locks = KeyedLocks()


def _parse_provider(provider) -> Provider:
    try:
        return Provider(provider)
    except ValueError:
        raise UnsupportedOperation(f"Unknown provider: {provider}")


class ReconciliationEngine:
    """Orchestrates push, pull and delete for one database session."""

    def __init__(
        self,
        db: Session,
        registry: AdapterRegistry,
        settings: Optional[SyncSettings] = None,
        *,
        credentials: Optional[CredentialStore] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.db = db
        self.registry = registry
        self.settings = settings or get_settings()
        self.credentials = credentials or CredentialStore(db, registry, self.settings)
        self.locks = locks if locks is not None else push_locks
        self.appointments = AppointmentRepository(db)
        self.ledger = SyncLedgerRepository(db)
        self.integrations = IntegrationRepository(db)

    # Shared steps (also used by ConferenceProvisioner)

    def prepare(
        self,
        appointment_id: str,
        user_id: str,
        provider: Provider,
        capability: Capability,
    ) -> Tuple[Appointment, ProviderAdapter, IntegrationDB, str]:
        appointment = self.appointments.get_for_user(appointment_id, user_id)
        if appointment is None:
            raise NotFound(f"Appointment {appointment_id} not found")
        adapter = self.registry.get(provider)
        adapter.require(capability)
        integration = self.credentials.get_active_integration(user_id, provider)
        access_token = self.credentials.get_access_token(user_id, provider)
        return appointment, adapter, integration, access_token

    def claim_slot(self, user_id: str, appointment_id: str, integration: IntegrationDB, provider: Provider) -> LedgerEntry:
        return self.ledger.claim(
            user_id,
            appointment_id,
            integration.id,
            provider.value,
            stale_after_sec=self.settings.sync_claim_stale_sec,
        )

    def completed_entry(self, appointment_id: str, provider: Provider) -> Optional[LedgerEntry]:
        entry = self.ledger.find_by_appointment(appointment_id, provider.value)
        if entry is None or entry.is_claim:
            return None
        return entry

    def create_on_claim(
        self,
        adapter: ProviderAdapter,
        access_token: str,
        spec: EventSpec,
        claim: LedgerEntry,
        *,
        require_join_url: bool = False,
    ) -> ExternalEvent:
        """Create the remote resource and complete `claim` with its ID.

        The claim is released on every failure path, so the slot never stays
        reserved by this call. If the claim was taken over while the provider
        call was in flight, the event just created is deleted and
        AlreadySynced raised: the taker's mapping stands.
        """
        provider = adapter.provider.value
        try:
            event = adapter.create_event(access_token, spec)
        except Exception as e:
            self.ledger.release_claim(claim.id, claimed_at=claim.updated_at)
            if isinstance(e, SyncError):
                raise SyncFailed(provider, e) from e
            raise

        if require_join_url and not event.join_url:
            adapter.delete_event(access_token, event.id)
            self.ledger.release_claim(claim.id, claimed_at=claim.updated_at)
            raise SyncFailed(provider, "provider returned no join URL")

        try:
            completed = self.ledger.complete_claim(claim.id, event.id, claimed_at=claim.updated_at)
        except AlreadySynced:
            adapter.delete_event(access_token, event.id)
            self.ledger.release_claim(claim.id, claimed_at=claim.updated_at)
            raise
        if completed is None:
            # The appointment (and its claim) was deleted while the provider call was in flight.
            adapter.delete_event(access_token, event.id)
            raise NotFound(f"Appointment {claim.appointment_id} was deleted during sync")
        return event

    def _mark_synced(self, appointment_id: str, provider: Provider) -> None:
        if provider not in CONFERENCE_PROVIDERS:
            self.appointments.mark_calendar_synced(appointment_id)

    def hold(self, appointment_id: str, provider: Provider):
        return self.locks.hold((appointment_id, provider.value), timeout=self.settings.sync_lock_timeout_sec)

    # Push

    def push(
        self,
        appointment_id: str,
        user_id: str,
        provider,
        *,
        retry_on_conflict: bool = True,
    ) -> SyncResult:
        """Mirror an appointment to a provider, creating or updating the remote event."""
        try:
            provider = _parse_provider(provider)
            with self.hold(appointment_id, provider):
                return self._push(appointment_id, user_id, provider, retry_on_conflict)
        except TimeoutError:
            logger.warning(f"Push of appointment {appointment_id} to {provider} timed out waiting for its lock")
            return SyncResult(
                kind=SyncResultKind.SYNC_FAILED,
                provider=str(getattr(provider, "value", provider)),
                appointment_id=appointment_id,
                message="Another sync of this appointment is still running",
            )
        except SyncError as e:
            if isinstance(e, SyncFailed):
                logger.error(f"Failed to push appointment {appointment_id} to {e.provider}: {e.cause}")
            return SyncResult.from_error(e, str(getattr(provider, "value", provider)), appointment_id)

    def _push(self, appointment_id: str, user_id: str, provider: Provider, retry_on_conflict: bool) -> SyncResult:
        appointment, adapter, integration, access_token = self.prepare(
            appointment_id, user_id, provider, Capability.EVENT_CRUD
        )
        spec = EventSpec.from_appointment(appointment)

        entry = self.ledger.find_by_appointment(appointment_id, provider.value)
        if entry is not None and not entry.is_claim:
            return self._update_existing(adapter, access_token, spec, entry, user_id, integration)

        try:
            claim = self.claim_slot(user_id, appointment_id, integration, provider)
        except AlreadySynced:
            winner = self.completed_entry(appointment_id, provider) if retry_on_conflict else None
            if winner is None:
                raise
            logger.info(f"Appointment {appointment_id} was pushed to {provider.value} concurrently; updating instead")
            return self._update_existing(adapter, access_token, spec, winner, user_id, integration)

        event = self.create_on_claim(adapter, access_token, spec, claim)
        self._mark_synced(appointment_id, provider)
        logger.info(f"Created {provider.value} event {event.id} for appointment {appointment_id}")
        return SyncResult.success(provider.value, appointment_id, external_event_id=event.id, created=True)

    def _update_existing(
        self,
        adapter: ProviderAdapter,
        access_token: str,
        spec: EventSpec,
        entry: LedgerEntry,
        user_id: str,
        integration: IntegrationDB,
    ) -> SyncResult:
        provider = adapter.provider
        try:
            adapter.update_event(access_token, entry.external_event_id, spec)
        except ProviderError as e:
            if e.status_code not in _GONE_STATUSES:
                raise SyncFailed(provider.value, e) from e
            # Deleted on the provider side: forget the mapping and create a fresh event.
            logger.info(f"{provider.value} event {entry.external_event_id} is gone; recreating")
            self.ledger.delete(entry.appointment_id, provider.value)
            claim = self.claim_slot(user_id, entry.appointment_id, integration, provider)
            event = self.create_on_claim(adapter, access_token, spec, claim)
            self._mark_synced(entry.appointment_id, provider)
            return SyncResult.success(provider.value, entry.appointment_id, external_event_id=event.id, created=True)
        except SyncError as e:
            raise SyncFailed(provider.value, e) from e
        self._mark_synced(entry.appointment_id, provider)
        logger.debug(f"Updated {provider.value} event {entry.external_event_id} for appointment {entry.appointment_id}")
        return SyncResult.success(provider.value, entry.appointment_id, external_event_id=entry.external_event_id)

    # Pull

    def pull(self, user_id: str, provider) -> PullResult:
        """Import remote events in the pull window that are not mirrored yet.

        Never updates or deletes existing appointments and never raises for
        provider failures; those are reported on the result.
        """
        try:
            provider = _parse_provider(provider)
            adapter = self.registry.get(provider)
            adapter.require(Capability.EVENT_LIST)
        except UnsupportedOperation as e:
            return PullResult(provider=str(getattr(provider, "value", provider)), error=str(e))

        result = PullResult(provider=provider.value)
        try:
            integration = self.credentials.get_active_integration(user_id, provider)
        except NotConnected:
            result.connected = False
            return result

        try:
            access_token = self.credentials.get_access_token(user_id, provider)
            window_start = utcnow()
            window_end = window_start + timedelta(days=self.settings.pull_window_days)
            events = adapter.list_events(access_token, window_start, window_end)
        except SyncError as e:
            logger.warning(f"Failed to list {provider.value} events for user {user_id}: {str(e)}")
            result.error = str(e)
            return result
        except (KeyError, ValueError) as e:
            logger.error(f"Unreadable {provider.value} listing for user {user_id}: {type(e).__name__}: {str(e)}")
            result.error = f"Unreadable {provider.value} listing: {type(e).__name__}"
            return result

        for event in events:
            try:
                self._check_importable(event)
            except ImportSkipped as e:
                logger.debug(f"Skipping {provider.value} event {event.id}: {str(e)}")
                result.skipped_count += 1
                continue

            if self.ledger.find_by_external_id(event.id, provider.value, integration.id) is not None:
                result.already_mirrored_count += 1
                continue

            try:
                appointment_id = self._import_event(user_id, integration, provider, event)
            except AlreadySynced:
                result.already_mirrored_count += 1
                continue
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to import {provider.value} event {event.id}: {type(e).__name__}: {str(e)}")
                result.error = f"Import stopped at event {event.id}: {type(e).__name__}"
                break
            result.imported_count += 1
            result.imported_appointment_ids.append(appointment_id)

        self.integrations.touch_last_synced(integration)
        logger.info(
            f"Pulled {provider.value} for user {user_id}: {result.imported_count} imported, "
            f"{result.already_mirrored_count} already mirrored, {result.skipped_count} skipped"
        )
        return result

    def _check_importable(self, event: ExternalEvent) -> None:
        if event.start is None or event.end is None:
            raise ImportSkipped("missing start or end time")
        if event.end < event.start:
            raise ImportSkipped("ends before it starts")

    def _import_event(self, user_id: str, integration: IntegrationDB, provider: Provider, event: ExternalEvent) -> str:
        # Appointment and ledger entry commit together; a unique violation rolls both back.
        appointment = self.appointments.create(
            user_id,
            event.title or UNTITLED_EVENT,
            event.start,
            event.end,
            location=event.location,
            notes=event.notes,
            calendar_synced=True,
            commit=False,
        )
        self.ledger.upsert(
            LedgerEntry(
                user_id=user_id,
                appointment_id=appointment.id,
                integration_id=integration.id,
                provider=provider.value,
                external_event_id=event.id,
            ),
            commit=False,
        )
        appointment_id = appointment.id
        self.db.commit()
        return appointment_id

    # Delete

    def delete(self, appointment_id: str, user_id: str, provider) -> SyncResult:
        """Remove the remote mirror and its ledger entry.

        The ledger entry is removed whatever the provider answers; remote
        failures are logged only.
        """
        try:
            provider = _parse_provider(provider)
            with self.hold(appointment_id, provider):
                return self._delete(appointment_id, user_id, provider)
        except TimeoutError:
            return SyncResult(
                kind=SyncResultKind.SYNC_FAILED,
                provider=str(getattr(provider, "value", provider)),
                appointment_id=appointment_id,
                message="Another sync of this appointment is still running",
            )
        except SyncError as e:
            return SyncResult.from_error(e, str(getattr(provider, "value", provider)), appointment_id)

    def _delete(self, appointment_id: str, user_id: str, provider: Provider) -> SyncResult:
        entry = self.ledger.find_by_appointment(appointment_id, provider.value)
        if entry is None or entry.user_id != user_id:
            return SyncResult.success(provider.value, appointment_id)

        if not entry.is_claim:
            try:
                adapter = self.registry.get(provider)
                access_token = self.credentials.get_access_token(user_id, provider)
                if not adapter.delete_event(access_token, entry.external_event_id):
                    logger.warning(
                        f"{provider.value} event {entry.external_event_id} may still exist; dropping ledger entry anyway"
                    )
            except SyncError as e:
                logger.warning(f"Skipped remote delete of {provider.value} event {entry.external_event_id}: {str(e)}")

        self.ledger.delete(appointment_id, provider.value)
        self._after_unlink(appointment_id, provider)
        return SyncResult.success(provider.value, appointment_id, external_event_id=entry.external_event_id)

    def _after_unlink(self, appointment_id: str, provider: Provider) -> None:
        appointment = self.appointments.get(appointment_id)
        if appointment is None:
            return
        if provider in CONFERENCE_PROVIDERS:
            if appointment.video_platform == provider.value:
                self.appointments.set_video(appointment_id, None, None)
            return
        remaining = [
            e for e in self.ledger.list_for_appointment(appointment_id)
            if Provider(e.provider) not in CONFERENCE_PROVIDERS
        ]
        if not remaining:
            self.appointments.mark_calendar_synced(appointment_id, False)

    def delete_all(self, appointment_id: str, user_id: str) -> List[SyncResult]:
        """Run `delete` for every provider the appointment is mirrored to."""
        return [
            self.delete(appointment_id, user_id, entry.provider)
            for entry in self.ledger.list_for_appointment(appointment_id)
            if entry.user_id == user_id
        ]
