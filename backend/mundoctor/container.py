"""
Security Container
Builds and owns the single instance of every auth, sync, audit and webhook component
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, List, Optional

from .audit_db import AuditRepository, DatabaseAuditSink
from .auth.cache import AuthCache
from .auth.provider import ClerkIdentityProvider, IdentityProvider
from .auth.verifier import IdentityVerifier
from .config import Settings
from .database import Database
from .models import AuditAction, RiskLevel
from .rbac import RBACManager
from .services.audit import AuditPipeline, AuditSink
from .services.sync import SyncEngine
from .services.webhooks import (
    InMemoryRetryStore,
    RetryStateStore,
    WebhookDispatcher,
    WebhookRetryCoordinator,
    WebhookVerifier,
)

logger = logging.getLogger(__name__)

# Retry records older than this are considered abandoned
RETRY_STATE_MAX_AGE_SECONDS = 24 * 60 * 60


class SecurityContainer:
    """
    Composition root for the security core.

    Every collaborator is constructed once here and shared by reference, so
    tests can substitute any of them (provider, database, audit sinks,
    stores) without touching call sites.
    """

    def __init__(
        self,
        settings: Settings,
        db: Optional[Database] = None,
        provider: Optional[IdentityProvider] = None,
        audit_sinks: Optional[List[AuditSink]] = None,
        retry_store: Optional[RetryStateStore] = None,
        rbac: Optional[RBACManager] = None,
    ):
        self.settings = settings
        self.db = db or Database(settings.database_url, echo=settings.database_echo)
        self.provider: IdentityProvider = provider or ClerkIdentityProvider(
            secret_key=settings.provider_secret_key,
            api_url=settings.provider_api_url,
            jwks_url=settings.provider_jwks_url,
            issuer=settings.provider_issuer,
            timeout=settings.provider_timeout_seconds,
        )

        sinks = audit_sinks if audit_sinks is not None else [DatabaseAuditSink(self.db)]
        self.audit = AuditPipeline(sinks)
        self.audit_repository = AuditRepository(self.db)

        self.cache = AuthCache(
            ttl_seconds=settings.auth_cache_ttl_seconds,
            max_entries=settings.auth_cache_max_entries,
            evict_fraction=settings.auth_cache_evict_fraction,
            key_length=settings.auth_cache_key_prefix_length,
        )
        self.rbac = rbac or RBACManager()
        self.verifier = IdentityVerifier(self.provider, self.cache, self.audit)
        self.sync = SyncEngine(self.db, self.provider, self.audit)

        self.webhook_verifier = WebhookVerifier(settings.webhook_secret, settings.webhook_tolerance_seconds)
        self.webhook_dispatcher = WebhookDispatcher(self.sync, self.audit)
        self.webhook_coordinator = WebhookRetryCoordinator(
            self.audit,
            store=retry_store or InMemoryRetryStore(),
            max_retries=settings.webhook_max_retries,
            retry_delay=settings.webhook_retry_delay_seconds,
            backoff_multiplier=settings.webhook_retry_backoff_multiplier,
            max_delay=settings.webhook_retry_max_delay_seconds,
        )

        self._background: List["asyncio.Task[None]"] = []

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_caches(self) -> int:
        removed = self.cache.sweep()
        removed += self.webhook_coordinator.store.sweep(RETRY_STATE_MAX_AGE_SECONDS)
        return removed

    async def cleanup_audit_logs(self) -> int:
        """Apply the retention horizon to audit_logs; high and critical events are kept"""
        deleted = await self.audit_repository.cleanup(self.settings.audit_retention_days)
        logger.info(f"Audit retention removed {deleted} events older than {self.settings.audit_retention_days} days")
        self.audit.log(
            AuditAction.AUDIT_CLEANUP,
            "audit_logs",
            details={"deleted": deleted, "retention_days": self.settings.audit_retention_days},
            risk_level=RiskLevel.MEDIUM,
        )
        return deleted

    def _start_periodic(self, name: str, interval: float, job: Callable[[], Coroutine[Any, Any, Any]]) -> None:
        async def run() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await job()
                except Exception as e:
                    logger.error(f"Periodic job {name} failed: {e}")

        self._background.append(asyncio.get_running_loop().create_task(run(), name=name))

    async def _sweep_job(self) -> None:
        self.sweep_caches()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._start_periodic("auth-cache-sweep", self.settings.auth_cache_ttl_seconds, self._sweep_job)
        if self.settings.audit_cleanup_interval_seconds > 0:
            self._start_periodic(
                "audit-retention", self.settings.audit_cleanup_interval_seconds, self.cleanup_audit_logs
            )
        logger.info("Security container started")

    async def stop(self) -> None:
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        await self.webhook_coordinator.shutdown()
        await self.audit.flush()

        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.db.dispose()
        logger.info("Security container stopped")
