"""
External API seams

The pool never talks to the streaming service directly. It goes through a
token refresher (credential rotation) and a client factory (one client per
tenant). Both are supplied by the application; `http_client` has httpx
implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..core.models import Credential


@dataclass
class TokenGrant:
    """Result of a successful token refresh"""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None  # set when the provider rotates it


class TokenRefresher(ABC):
    """Exchanges a refresh token for a new access token"""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Obtain a new access token

        Raises:
            AuthenticationExpiredError: the refresh token was rejected
            TransientExternalError: network problem or provider outage
        """
        pass


# Builds the per-tenant client; credential is None for unauthenticated tenants
ClientFactory = Callable[[str, Optional[Credential]], Any]
