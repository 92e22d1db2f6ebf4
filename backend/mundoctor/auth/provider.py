"""
Identity Provider Adapter
Session-token verification and backend user API calls against the identity provider
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx
import jwt
from jwt import PyJWKClient
from pydantic import BaseModel, Field

from ..exceptions import AuthenticationError, ProviderError
from ..utils.logging_security import sanitize_id_for_log

logger = logging.getLogger(__name__)


class Principal(BaseModel):
    """Verified identity produced by token validation, not yet resolved to a local user"""

    user_id: str
    session_id: Optional[str] = None
    email: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict)


class ProviderProfile(BaseModel):
    """Canonical user data as held by the identity provider"""

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    image_url: Optional[str] = None
    email_verified: bool = False
    public_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def role(self) -> Optional[str]:
        return self.public_metadata.get("role")

    @property
    def status(self) -> Optional[str]:
        return self.public_metadata.get("status")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ProviderProfile":
        """Build a profile from a provider user object (API response or webhook ``data``)"""
        emails = data.get("email_addresses") or []
        primary_id = data.get("primary_email_address_id")
        primary = next((e for e in emails if e.get("id") == primary_id), emails[0] if emails else {})
        phones = data.get("phone_numbers") or []

        created_at = None
        if data.get("created_at"):
            created_at = datetime.fromtimestamp(int(data["created_at"]) / 1000, tz=timezone.utc)

        return cls(
            id=data["id"],
            email=primary.get("email_address"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            phone=phones[0].get("phone_number") if phones else None,
            image_url=data.get("image_url"),
            email_verified=(primary.get("verification") or {}).get("status") == "verified",
            public_metadata=data.get("public_metadata") or {},
            created_at=created_at,
        )


class IdentityProvider(Protocol):
    """Operations the core consumes from the external identity provider"""

    async def verify_token(self, credential: str) -> Principal: ...

    async def get_user_profile(self, subject_id: str) -> ProviderProfile: ...

    async def update_user_metadata(self, subject_id: str, public_metadata: Dict[str, Any]) -> None: ...

    async def list_users(self, limit: int = 100, offset: int = 0) -> List[ProviderProfile]: ...


class ClerkIdentityProvider:
    """
    Identity provider backed by Clerk.

    Session tokens are RS256 JWTs verified against the instance JWKS; user
    data is read and written through the backend REST API with the secret key.
    Timeouts come from the HTTP client configuration.
    """

    def __init__(
        self,
        secret_key: str,
        api_url: str = "https://api.clerk.com/v1",
        jwks_url: Optional[str] = None,
        issuer: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
        jwks_client: Optional[PyJWKClient] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.issuer = issuer
        auth_headers = {"Authorization": f"Bearer {secret_key}"}
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.api_url, headers=auth_headers, timeout=timeout
        )
        self.jwks_client = jwks_client or PyJWKClient(
            jwks_url or f"{self.api_url}/jwks", cache_keys=True, headers=auth_headers, timeout=int(timeout)
        )

    async def verify_token(self, credential: str) -> Principal:
        try:
            signing_key = await asyncio.to_thread(self.jwks_client.get_signing_key_from_jwt, credential)
            claims = jwt.decode(
                credential,
                signing_key.key,
                algorithms=["RS256"],
                issuer=self.issuer,
                options={"require": ["exp", "sub"], "verify_iss": self.issuer is not None},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.PyJWKClientError as e:
            logger.warning(f"Could not resolve signing key: {e}")
            raise AuthenticationError("Could not validate credentials")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            raise AuthenticationError("Could not validate credentials")

        return Principal(
            user_id=claims["sub"],
            session_id=claims.get("sid"),
            email=claims.get("email"),
            claims=claims,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.http_client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"Identity provider {method} {path} returned HTTP {status_code}")
            raise ProviderError(upstream_status=status_code) from e
        except httpx.HTTPError as e:
            logger.error(f"Identity provider {method} {path} failed: {e}")
            raise ProviderError(f"Identity provider unreachable: {type(e).__name__}") from e
        return response.json()

    async def get_user_profile(self, subject_id: str) -> ProviderProfile:
        data = await self._request("GET", f"/users/{subject_id}")
        return ProviderProfile.from_api(data)

    async def update_user_metadata(self, subject_id: str, public_metadata: Dict[str, Any]) -> None:
        await self._request("PATCH", f"/users/{subject_id}/metadata", json={"public_metadata": public_metadata})
        logger.info(f"Pushed public metadata for {sanitize_id_for_log(subject_id)}")

    async def list_users(self, limit: int = 100, offset: int = 0) -> List[ProviderProfile]:
        data = await self._request("GET", "/users", params={"limit": limit, "offset": offset})
        return [ProviderProfile.from_api(item) for item in data]

    async def aclose(self) -> None:
        await self.http_client.aclose()
