"""
httpx implementations of the external API seams
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .base import TokenGrant, TokenRefresher
from ..core.errors import (
    AuthenticationExpiredError, TransientExternalError, ErrorCode
)
from ..core.models import Credential

logger = logging.getLogger(__name__)

# Status codes worth retrying
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class HTTPTokenRefresher(TokenRefresher):
    """OAuth2 refresh_token grant against the provider's token endpoint"""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    async def refresh(self, refresh_token: str) -> TokenGrant:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                    auth=(self.client_id, self.client_secret)
                )
        except httpx.TimeoutException as e:
            raise TransientExternalError(
                "Token endpoint timed out", code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT, cause=e
            )
        except httpx.TransportError as e:
            raise TransientExternalError(f"Token endpoint unreachable: {e}", cause=e)

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientExternalError(
                f"Token endpoint returned {response.status_code}",
                code=ErrorCode.EXTERNAL_SERVICE_RATE_LIMITED if response.status_code == 429
                else ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
                data={"status_code": response.status_code}
            )
        if response.status_code >= 400:
            # invalid_grant and friends: the refresh token itself is no good
            raise AuthenticationExpiredError(
                "Refresh token rejected by provider",
                data={"status_code": response.status_code, "body": response.text[:200]}
            )

        body = response.json()
        return TokenGrant(
            access_token=body["access_token"],
            expires_in=int(body.get("expires_in", 3600)),
            refresh_token=body.get("refresh_token")
        )


class StreamingAPIClient:
    """
    Per-tenant client for the streaming service REST API

    Holds the tenant's access token; the pool swaps it in place after a refresh.
    """

    def __init__(
        self,
        tenant_id: str,
        credential: Optional[Credential],
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.tenant_id = tenant_id
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.credential: Optional[Credential] = None
        self.update_credential(credential)

    def update_credential(self, credential: Optional[Credential]) -> None:
        self.credential = credential
        if credential:
            self._http.headers["Authorization"] = f"Bearer {credential.access_token}"
        else:
            self._http.headers.pop("Authorization", None)

    async def request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and return the decoded JSON body (None for empty bodies)"""
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientExternalError(
                f"{method} {path} timed out", code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT, cause=e
            )
        except httpx.TransportError as e:
            raise TransientExternalError(f"{method} {path} failed: {e}", cause=e)

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientExternalError(
                f"{method} {path} returned {response.status_code}",
                data={"status_code": response.status_code, "tenant_id": self.tenant_id}
            )
        response.raise_for_status()
        return response.json() if response.content else None

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def put(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def post(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request("POST", path, json=json)

    async def aclose(self) -> None:
        await self._http.aclose()


def http_client_factory(base_url: str, timeout: float = 10.0):
    """Client factory building StreamingAPIClient instances for the pool"""

    def factory(tenant_id: str, credential: Optional[Credential]) -> StreamingAPIClient:
        return StreamingAPIClient(tenant_id, credential, base_url=base_url, timeout=timeout)

    return factory
