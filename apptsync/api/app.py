"""FastAPI web application for apptsync."""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional
from urllib.parse import urlencode
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from apptsync.auth.dependencies import get_current_user
from apptsync.auth.jwt import create_oauth_state, decode_oauth_state
from apptsync.config import SyncSettings, get_settings
from apptsync.database.appointment_repository import AppointmentRepository
from apptsync.database.database import SessionLocal, get_db, init_db
from apptsync.errors import AuthExchangeFailed, SyncError
from apptsync.integrations.base import Capability
from apptsync.integrations.registry import AdapterRegistry, build_default_registry
from apptsync.models.integration import CONNECTABLE_PROVIDERS, Integration, Provider
from apptsync.models.sync import PullResult, SyncResult, SyncResultKind
from apptsync.models.user import User
from apptsync.sync.conference import ConferenceProvisioner
from apptsync.sync.pull_runner import PullRunner
from apptsync.sync.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

_registry: Optional[AdapterRegistry] = None


def get_app_settings() -> SyncSettings:
    return get_settings()


def get_registry(settings: SyncSettings = Depends(get_app_settings)) -> AdapterRegistry:
    """Adapters are built once per process."""
    global _registry
    if _registry is None:
        _registry = build_default_registry(settings)
    return _registry


def get_engine(
    db: Session = Depends(get_db),
    registry: AdapterRegistry = Depends(get_registry),
    settings: SyncSettings = Depends(get_app_settings),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, registry, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    settings = get_settings()
    runner = PullRunner(SessionLocal, get_registry(settings), settings)
    runner.start()
    try:
        yield
    finally:
        runner.stop(timeout=5)


# Initialize FastAPI app
app = FastAPI(
    title="apptsync API",
    description="Keeps appointments in step with Google/Microsoft calendars and provisions Zoom/Meet links",
    version="0.1.0",
    lifespan=lifespan,
)


# Response models
class AuthUrlResponse(BaseModel):
    """Provider authorization URL."""
    url: str


class DeleteAppointmentResponse(BaseModel):
    """Response for appointment deletion."""
    deleted: bool
    sync: List[SyncResult]


_STATUS_BY_KIND: Dict[str, int] = {
    SyncResultKind.NOT_FOUND.value: 404,
    SyncResultKind.NOT_CONNECTED.value: 409,
    SyncResultKind.ALREADY_SYNCED.value: 409,
    SyncResultKind.UNSUPPORTED.value: 400,
    SyncResultKind.SYNC_FAILED.value: 502,
}


def _raise_for_result(result: SyncResult) -> SyncResult:
    if result.ok:
        return result
    raise HTTPException(
        status_code=_STATUS_BY_KIND.get(result.kind, 500),
        detail={"kind": result.kind, "provider": result.provider, "message": result.message},
    )


def _settings_redirect(settings: SyncSettings, provider: str, status: str) -> RedirectResponse:
    query = urlencode({"integration": provider, "status": status})
    return RedirectResponse(url=f"{settings.app_url}/settings?{query}", status_code=302)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


# Integrations

@app.get("/integrations", response_model=List[Integration])
def list_integrations(
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """List the user's provider connections (never credentials)."""
    return engine.credentials.list_integrations(user.id)


@app.get("/integrations/{provider}/auth-url", response_model=AuthUrlResponse)
def integration_auth_url(
    provider: Provider,
    user: User = Depends(get_current_user),
    registry: AdapterRegistry = Depends(get_registry),
):
    """Return the provider consent URL; `state` binds the callback to this user."""
    if provider not in CONNECTABLE_PROVIDERS:
        raise HTTPException(status_code=400, detail=f"{provider.value} is connected through google_calendar")
    adapter = registry.get(provider)
    if not adapter.supports(Capability.AUTH_URL):
        raise HTTPException(status_code=400, detail=f"{provider.value} has no authorization flow")
    return AuthUrlResponse(url=adapter.auth_url(create_oauth_state(user.id, provider.value)))


@app.get("/integrations/{provider}/callback")
def integration_callback(
    provider: Provider,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    engine: ReconciliationEngine = Depends(get_engine),
    settings: SyncSettings = Depends(get_app_settings),
):
    """OAuth redirect target: exchange the code, store credentials, bounce back to the app."""
    decoded = decode_oauth_state(state) if state else None
    if error or not code or decoded is None or decoded[1] != provider.value:
        logger.warning(f"Rejected {provider.value} OAuth callback (error={error!r}, state valid={decoded is not None})")
        return _settings_redirect(settings, provider.value, "error")

    user_id = decoded[0]
    try:
        token_set = engine.registry.get(provider).exchange_code(code)
        engine.credentials.save(user_id, provider, token_set)
    except AuthExchangeFailed as e:
        logger.warning(f"{provider.value} code exchange failed for user {user_id}: {str(e)}")
        return _settings_redirect(settings, provider.value, "error")
    except SyncError as e:
        logger.error(f"{provider.value} OAuth callback failed for user {user_id}: {type(e).__name__}: {str(e)}")
        return _settings_redirect(settings, provider.value, "error")
    return _settings_redirect(settings, provider.value, "success")


@app.delete("/integrations/{provider}")
def disconnect_integration(
    provider: Provider,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Disconnect a provider; its ledger entries are removed with it."""
    if provider not in CONNECTABLE_PROVIDERS:
        raise HTTPException(status_code=400, detail=f"{provider.value} is connected through google_calendar")
    if not engine.credentials.disconnect(user.id, provider):
        raise HTTPException(status_code=404, detail=f"{provider.value} is not connected")
    return {"disconnected": True, "provider": provider.value}


@app.post("/integrations/{provider}/pull", response_model=PullResult)
def pull_integration(
    provider: Provider,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Import upcoming remote events that are not mirrored yet."""
    result = engine.pull(user.id, provider)
    if not result.connected:
        raise HTTPException(status_code=409, detail=f"{provider.value} is not connected")
    return result


# Appointments

@app.post("/appointments/{appointment_id}/sync/{provider}", response_model=SyncResult)
def push_appointment(
    appointment_id: str,
    provider: Provider,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Create or update the appointment's mirror on a provider."""
    return _raise_for_result(engine.push(appointment_id, user.id, provider))


@app.delete("/appointments/{appointment_id}/sync/{provider}", response_model=SyncResult)
def delete_appointment_sync(
    appointment_id: str,
    provider: Provider,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Remove the appointment's mirror on a provider."""
    return _raise_for_result(engine.delete(appointment_id, user.id, provider))


@app.post("/appointments/{appointment_id}/conference/{provider}", response_model=SyncResult)
def provision_conference(
    appointment_id: str,
    provider: Provider,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Attach a Zoom or Google Meet link to the appointment."""
    return _raise_for_result(ConferenceProvisioner(engine).provision(appointment_id, user.id, provider))


@app.delete("/appointments/{appointment_id}", response_model=DeleteAppointmentResponse)
def delete_appointment(
    appointment_id: str,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Delete remote mirrors (best effort), then the appointment."""
    repo = AppointmentRepository(engine.db)
    if repo.get_for_user(appointment_id, user.id) is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    results = engine.delete_all(appointment_id, user.id)
    deleted = repo.delete(appointment_id, user.id)
    return DeleteAppointmentResponse(deleted=deleted, sync=results)
