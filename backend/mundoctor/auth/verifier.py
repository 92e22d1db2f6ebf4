"""
Identity Verifier
Turns an inbound bearer credential into a verified Principal, consulting the auth cache first
"""

import logging
from typing import Optional

from ..exceptions import AppError, AuthenticationError
from ..models import AuditAction, RequestContext, RiskLevel
from ..services.audit import AuditPipeline
from ..utils.logging_security import sanitize_error_message_for_log, sanitize_id_for_log
from .cache import AuthCache
from .provider import IdentityProvider, Principal

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


class IdentityVerifier:
    """
    Verifies bearer credentials.

    A cache hit within the TTL skips the provider entirely. Provider failures
    are not retried; they are audited as LOGIN_FAILED and surface as
    AuthenticationError.
    """

    def __init__(self, provider: IdentityProvider, cache: AuthCache, audit: AuditPipeline):
        self.provider = provider
        self.cache = cache
        self.audit = audit

    @staticmethod
    def extract_token(authorization: Optional[str]) -> Optional[str]:
        if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
            return None
        token = authorization[len(BEARER_PREFIX) :].strip()
        return token or None

    async def verify(
        self,
        authorization: Optional[str],
        context: Optional[RequestContext] = None,
        audit_failures: bool = True,
    ) -> Principal:
        token = self.extract_token(authorization)
        if token is None:
            if audit_failures:
                self._audit_failure(context, "Missing or malformed bearer token")
            raise AuthenticationError("Authentication required")

        key = self.cache.key_for(authorization)
        cached = self.cache.get(key)
        if cached is not None:
            principal, age = cached
            logger.info(
                f"Auth cache hit for {sanitize_id_for_log(principal.user_id)}",
                extra={"cache_age_seconds": round(age, 3)},
            )
            return principal

        try:
            principal = await self.provider.verify_token(token)
        except AuthenticationError as e:
            if audit_failures:
                self._audit_failure(context, e.message)
            raise
        except AppError as e:
            if audit_failures:
                self._audit_failure(context, e.message)
            raise AuthenticationError("Could not validate credentials") from e
        except Exception as e:
            logger.error(f"Identity provider raised unexpectedly: {sanitize_error_message_for_log(e)}")
            if audit_failures:
                self._audit_failure(context, "Identity provider error")
            raise AuthenticationError("Could not validate credentials") from e

        self.cache.put(key, principal)
        return principal

    def _audit_failure(self, context: Optional[RequestContext], reason: str) -> None:
        logger.warning(f"Authentication failed: {sanitize_error_message_for_log(reason)}")
        self.audit.log(
            AuditAction.LOGIN_FAILED,
            "authentication",
            details={
                "path": context.path if context else None,
                "method": context.method if context else None,
                "reason": reason,
            },
            risk_level=RiskLevel.MEDIUM,
            success=False,
            error_message=reason,
            context=context,
        )
