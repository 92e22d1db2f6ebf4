"""
Identity Sync Engine
Materializes identity-provider users into the local relational model.

All create/update paths run inside one transaction covering the existence
re-check and the writes. Consistency validation is advisory and runs after
the transaction has committed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncConnection

from ..auth.provider import IdentityProvider, Principal, ProviderProfile
from ..database import Database
from ..exceptions import AuthenticationError, NotFoundError, ValidationError
from ..models import AuditAction, LocalUser, RequestContext, RiskLevel, UserStatus
from ..rbac import UserRole
from ..repositories.user_repository import UserRepository
from ..utils.logging_security import sanitize_error_message_for_log, sanitize_id_for_log
from .audit import AuditPipeline

logger = logging.getLogger(__name__)

SELF_SELECTABLE_ROLES = (UserRole.PATIENT.value, UserRole.PROFESSIONAL.value)


@dataclass
class ConsistencyReport:
    """Field-level drift between the local row and the provider's view"""

    user_id: str
    inconsistencies: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.inconsistencies

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "consistent": self.consistent, "inconsistencies": self.inconsistencies}


@dataclass
class BulkSyncResult:
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)


def _known_role(value: Optional[str]) -> Optional[str]:
    return value if value in UserRole.values() else None


def _known_status(value: Optional[str]) -> Optional[str]:
    return value if value in {s.value for s in UserStatus} else None


class SyncEngine:
    """
    Keeps local users in step with the identity provider.

    Concurrent ``ensure_local_user`` calls for the same subject are collapsed
    onto one in-process lock; across processes the transactional re-check and
    the ON CONFLICT DO NOTHING insert keep exactly one row per subject.
    """

    def __init__(
        self,
        db: Database,
        provider: IdentityProvider,
        audit: AuditPipeline,
        users: Optional[UserRepository] = None,
        validate_after_sync: bool = True,
    ):
        self.db = db
        self.provider = provider
        self.audit = audit
        self.users = users or UserRepository(db)
        self.validate_after_sync = validate_after_sync
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def resolve_user(self, principal: Principal, context: Optional[RequestContext] = None) -> LocalUser:
        """Return the local user for a principal, auto-syncing on a miss"""
        user = await self.users.get_user(principal.user_id)
        if user is not None:
            return user

        try:
            return await self.ensure_local_user(principal.user_id, context)
        except Exception as e:
            logger.error(
                f"Auto-sync failed for {sanitize_id_for_log(principal.user_id)}: "
                f"{sanitize_error_message_for_log(e)}"
            )
            raise AuthenticationError("User not found in database and auto-sync failed") from e

    async def ensure_local_user(self, subject_id: str, context: Optional[RequestContext] = None) -> LocalUser:
        """
        Materialize a provider user locally if absent.

        Raises whatever the provider or database raised; nothing is committed
        unless the user row and its role profile were both written.
        """
        async with self._subject_lock(subject_id):

            async def _sync(conn: AsyncConnection) -> Tuple[LocalUser, bool]:
                existing = await self.users.get_user(subject_id, conn=conn)
                if existing is not None:
                    return existing, False

                profile = await self.provider.get_user_profile(subject_id)
                created = await self._insert_from_profile(conn, profile)
                user = await self.users.get_user(subject_id, conn=conn)
                if user is None:
                    raise NotFoundError(f"User {subject_id} vanished during sync")
                return user, created

            user, created = await self.db.with_transaction(_sync)

        if created:
            logger.info(f"Auto-synced user {sanitize_id_for_log(subject_id)} with role {user.role}")
            self.audit.log(
                AuditAction.USER_AUTO_SYNCED,
                "user",
                user_id=user.id,
                resource_id=user.id,
                details={"source": "auto_sync", "email": user.email, "role": user.role},
                risk_level=RiskLevel.LOW,
                context=context,
            )
            if self.validate_after_sync:
                await self._validate_quietly(subject_id)
        return user

    @asynccontextmanager
    async def _subject_lock(self, subject_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(subject_id, asyncio.Lock())
        self._lock_users[subject_id] = self._lock_users.get(subject_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[subject_id] -= 1
            if not self._lock_users[subject_id]:
                del self._lock_users[subject_id]
                del self._locks[subject_id]

    # ------------------------------------------------------------------
    # Provider-originated changes (webhooks, manual sync)
    # ------------------------------------------------------------------

    async def upsert_from_provider(
        self, profile: ProviderProfile, context: Optional[RequestContext] = None
    ) -> Tuple[LocalUser, bool]:
        """
        Create or update a user from a provider profile. Idempotent.

        Returns:
            (user, created)
        """

        async def _upsert(conn: AsyncConnection) -> Tuple[LocalUser, bool]:
            existing = await self.users.get_user(profile.id, conn=conn)
            if existing is None:
                created = await self._insert_from_profile(conn, profile)
            else:
                created = False
                values = self._update_values(existing, profile)
                await self.users.update_user(conn, profile.id, values)
                new_role = values.get("role", existing.role)
                if new_role != existing.role:
                    await self.users.create_role_profile(conn, profile.id, new_role)
                    await self.users.remove_other_role_profiles(conn, profile.id, new_role)
            user = await self.users.get_user(profile.id, conn=conn)
            if user is None:
                raise NotFoundError(f"User {profile.id} vanished during sync")
            return user, created

        async with self._subject_lock(profile.id):
            user, created = await self.db.with_transaction(_upsert)

        self.audit.log(
            AuditAction.USER_CREATED if created else AuditAction.USER_UPDATED,
            "user",
            user_id=user.id,
            resource_id=user.id,
            details={"source": "provider_sync", "email": user.email, "role": user.role},
            risk_level=RiskLevel.LOW,
            context=context,
        )
        return user, created

    async def sync_user(self, subject_id: str, context: Optional[RequestContext] = None) -> Tuple[LocalUser, bool]:
        """Fetch a user from the provider and upsert it locally"""
        profile = await self.provider.get_user_profile(subject_id)
        return await self.upsert_from_provider(profile, context)

    async def delete_user(self, subject_id: str, context: Optional[RequestContext] = None) -> None:
        """Delete a user on a provider delete event; a missing user raises NotFoundError"""
        deleted = await self.db.with_transaction(lambda conn: self.users.delete_user(conn, subject_id))
        if not deleted:
            raise NotFoundError(f"User not found: {subject_id}")

        logger.info(f"Deleted user {sanitize_id_for_log(subject_id)} on provider request")
        self.audit.log(
            AuditAction.USER_DELETED,
            "user",
            user_id=subject_id,
            resource_id=subject_id,
            details={"source": "provider_delete"},
            risk_level=RiskLevel.MEDIUM,
            context=context,
        )

    async def change_role(
        self, user_id: str, new_role: str, context: Optional[RequestContext] = None, actor_id: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Switch a user's role, create the matching profile row and push the
        role to the provider's public metadata, all inside one transaction.
        """
        if new_role not in UserRole.values():
            raise ValidationError(f"Unknown role: {new_role}")

        async def _change(conn: AsyncConnection) -> str:
            user = await self.users.get_user(user_id, conn=conn)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")

            status = user.status
            if new_role == UserRole.PATIENT.value:
                status = UserStatus.ACTIVE.value
            elif new_role == UserRole.PROFESSIONAL.value and user.role != new_role:
                status = UserStatus.PENDING_VALIDATION.value
            await self.users.update_user(conn, user_id, {"role": new_role, "status": status})
            await self.users.create_role_profile(conn, user_id, new_role)
            await self.users.remove_other_role_profiles(conn, user_id, new_role)
            await self.provider.update_user_metadata(
                user_id,
                {"role": new_role, "onboardingComplete": new_role == UserRole.PATIENT.value},
            )
            return user.role

        async with self._subject_lock(user_id):
            old_role = await self.db.with_transaction(_change)

        logger.info(f"Role changed for {sanitize_id_for_log(user_id)}: {old_role} -> {new_role}")
        self.audit.log(
            AuditAction.ROLE_CHANGED,
            "user_role",
            user_id=actor_id or user_id,
            resource_id=user_id,
            details={"old_role": old_role, "new_role": new_role, "target_user_id": user_id},
            risk_level=RiskLevel.HIGH,
            context=context,
        )
        return {"old_role": old_role, "new_role": new_role}

    async def rollback_user(self, user_id: str, reason: str = "sync_error") -> bool:
        """Remove a partially provisioned user and all its profile rows"""
        logger.warning(f"Rolling back user {sanitize_id_for_log(user_id)}: {reason}")
        deleted = await self.db.with_transaction(lambda conn: self.users.delete_user(conn, user_id))
        self.audit.log(
            AuditAction.USER_ROLLED_BACK,
            "user",
            user_id=user_id,
            resource_id=user_id,
            details={"source": "rollback", "reason": reason, "existed": deleted},
            risk_level=RiskLevel.HIGH,
        )
        return deleted

    async def bulk_sync(self, limit: int = 100, offset: int = 0, dry_run: bool = False) -> BulkSyncResult:
        """Reconcile a page of provider users; per-user failures are collected, not raised"""
        profiles = await self.provider.list_users(limit=limit, offset=offset)
        result = BulkSyncResult(total=len(profiles))

        for profile in profiles:
            try:
                if dry_run:
                    exists = await self.users.get_user(profile.id) is not None
                    created = not exists
                else:
                    _, created = await self.upsert_from_provider(profile)
            except Exception as e:
                result.errors += 1
                result.error_details.append({"user_id": profile.id, "email": profile.email, "error": str(e)})
                logger.error(f"Bulk sync failed for {sanitize_id_for_log(profile.id)}: {e}")
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1

        logger.info(
            f"Bulk sync finished: {result.created} created, {result.updated} updated, {result.errors} errors"
        )
        return result

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    async def validate_consistency(self, user_id: str) -> ConsistencyReport:
        """Compare the local row with the provider's canonical view"""
        profile = await self.provider.get_user_profile(user_id)
        user = await self.users.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User not found in database: {user_id}")

        report = ConsistencyReport(user_id=user_id)
        if profile.email != user.email:
            report.inconsistencies.append({"field": "email", "provider": profile.email, "database": user.email})
        if profile.role and profile.role != user.role:
            report.inconsistencies.append({"field": "role", "provider": profile.role, "database": user.role})
        if profile.email_verified != user.verified:
            report.inconsistencies.append(
                {"field": "verified", "provider": profile.email_verified, "database": user.verified}
            )

        if not report.consistent:
            logger.warning(
                f"User data inconsistencies detected for {sanitize_id_for_log(user_id)}: "
                f"{[item['field'] for item in report.inconsistencies]}"
            )
            self.audit.log(
                AuditAction.SUSPICIOUS_ACTIVITY,
                "user_consistency",
                user_id=user_id,
                resource_id=user_id,
                details={"inconsistencies": report.inconsistencies},
                risk_level=RiskLevel.MEDIUM,
            )
        return report

    async def _validate_quietly(self, user_id: str) -> None:
        try:
            await self.validate_consistency(user_id)
        except Exception as e:
            logger.warning(f"Consistency validation skipped for {sanitize_id_for_log(user_id)}: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _insert_from_profile(self, conn: AsyncConnection, profile: ProviderProfile) -> bool:
        role = _known_role(profile.role) or UserRole.PATIENT.value
        status = _known_status(profile.status) or UserStatus.ACTIVE.value
        values = {
            "id": profile.id,
            "email": profile.email,
            "name": profile.name or (profile.email.split("@")[0] if profile.email else None),
            "phone": profile.phone,
            "avatar_url": profile.image_url,
            "verified": profile.email_verified,
            "role": role,
            "status": status,
        }
        if profile.created_at is not None:
            values["created_at"] = profile.created_at

        inserted = await self.users.insert_user_if_absent(conn, values)
        if not inserted:
            return False

        await self.users.create_role_profile(conn, profile.id, role)
        await self.users.create_preferences(conn, profile.id)
        return True

    @staticmethod
    def _update_values(existing: LocalUser, profile: ProviderProfile) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "email": profile.email,
            "name": profile.name or existing.name,
            "phone": profile.phone,
            "avatar_url": profile.image_url,
            "verified": profile.email_verified,
        }

        # A professional under review keeps its local role and status
        if existing.status == UserStatus.PENDING_VALIDATION.value:
            return values

        role = _known_role(profile.role)
        if role:
            values["role"] = role
        status = _known_status(profile.status)
        if status:
            values["status"] = status
        return values
