"""
Mundoctor Authentication Package
Credential verification, the authentication cache and the identity provider adapter
"""

from .cache import AuthCache, InMemoryCacheBackend  # noqa: F401
from .dependencies import current_user, get_container, optional_auth, require_auth  # noqa: F401
from .provider import ClerkIdentityProvider, IdentityProvider, Principal, ProviderProfile  # noqa: F401
from .verifier import IdentityVerifier  # noqa: F401
