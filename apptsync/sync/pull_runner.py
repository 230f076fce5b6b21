"""Background pull of every active calendar integration.

Runs on its own thread with its own sessions, separate from request handling.
"""

import logging
import threading
import time
from typing import Callable, List, Optional
from sqlalchemy.orm import Session

from apptsync.config import SyncSettings, get_settings
from apptsync.database.integration_repository import IntegrationRepository
from apptsync.integrations.base import Capability
from apptsync.integrations.registry import AdapterRegistry
from apptsync.models.sync import PullResult
from apptsync.sync.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def pull_all_active(
    session_factory: SessionFactory,
    registry: AdapterRegistry,
    settings: Optional[SyncSettings] = None,
) -> List[PullResult]:
    """Pull once for every active integration whose adapter can list events.

    One session per integration, so a failure for one user never poisons the
    next.
    """
    settings = settings or get_settings()
    providers = [a.provider.value for a in registry.with_capability(Capability.EVENT_LIST)]

    db = session_factory()
    try:
        targets = [(row.user_id, row.provider) for row in IntegrationRepository(db).list_active(providers)]
    finally:
        db.close()

    results: List[PullResult] = []
    for user_id, provider in targets:
        db = session_factory()
        try:
            results.append(ReconciliationEngine(db, registry, settings).pull(user_id, provider))
        except Exception as e:
            logger.error(f"Scheduled pull failed for user {user_id} on {provider}: {type(e).__name__}: {str(e)}")
            results.append(PullResult(provider=provider, error=type(e).__name__))
        finally:
            db.close()
    return results


class PullRunner:
    """Calls `pull_all_active` every `interval_sec` seconds on a daemon thread."""

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: AdapterRegistry,
        settings: Optional[SyncSettings] = None,
        *,
        interval_sec: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings or get_settings()
        self.interval_sec = float(interval_sec if interval_sec is not None else self.settings.pull_interval_sec)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.interval_sec <= 0 or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="apptsync-pull", daemon=True)
        self._thread.start()
        logger.info(f"Background pull started (every {self.interval_sec:.0f}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> List[PullResult]:
        started_at = time.perf_counter()
        results = pull_all_active(self.session_factory, self.registry, self.settings)
        imported = sum(r.imported_count for r in results)
        failed = sum(1 for r in results if not r.ok)
        logger.info(
            f"Background pull finished: {len(results)} integrations, {imported} imported, "
            f"{failed} failed in {time.perf_counter() - started_at:.1f}s"
        )
        return results

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_sec):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Background pull crashed: {type(e).__name__}: {str(e)}")
