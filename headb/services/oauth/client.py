"""OAuth 2.0 device authorization grant client.

Wire contract (GitHub flavour):
- POST device_code_url, form `client_id` -> device code JSON
- POST access_token_url, form `client_id`, `device_code`, `grant_type`
  -> `{access_token, token_type, scope}` or `{error, error_description, error_uri}`
- GET identity_url with `Authorization: Bearer <access_token>` -> `{login, node_id}`
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from headb.config import OAuthConfig
from headb.services.http import get_http_client

logger = structlog.get_logger()

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"


@dataclass
class DeviceCodeResponse:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


@dataclass
class AccessTokenResponse:
    access_token: str
    token_type: str = ""
    scope: str = ""


@dataclass
class ProviderIdentity:
    """Identity returned by the provider's user endpoint."""

    login: str
    node_id: str


class ProviderError(Exception):
    """A provider request failed (non-OK status or unusable body)."""


class ProviderNetworkError(ProviderError):
    """The provider could not be reached."""


class DeviceFlowError(Exception):
    """Error answer to a device-code token poll."""

    code: str = "unknown"

    def __init__(self, description: str | None = None) -> None:
        self.description = description or ""
        super().__init__(f"{self.code}: {self.description}" if self.description else self.code)


class AuthorizationPending(DeviceFlowError):
    """User has not entered the code yet; keep polling at the current interval."""

    code = "authorization_pending"


class SlowDown(DeviceFlowError):
    """Polling too fast; the provider may send the interval to use from now on."""

    code = "slow_down"

    def __init__(self, description: str | None = None, interval: int | None = None) -> None:
        super().__init__(description)
        self.interval = interval


class ExpiredToken(DeviceFlowError):
    """Device code expired; a new sign-in is needed."""

    code = "expired_token"


class UnsupportedGrantType(DeviceFlowError):
    code = "unsupported_grant_type"


class IncorrectClientCredentials(DeviceFlowError):
    code = "incorrect_client_credentials"


class IncorrectDeviceCode(DeviceFlowError):
    code = "incorrect_device_code"


class AccessDenied(DeviceFlowError):
    """User cancelled the authorization; the code cannot be reused."""

    code = "access_denied"


_ERROR_CODES: dict[str, type[DeviceFlowError]] = {
    cls.code: cls
    for cls in (
        AuthorizationPending,
        SlowDown,
        ExpiredToken,
        UnsupportedGrantType,
        IncorrectClientCredentials,
        IncorrectDeviceCode,
        AccessDenied,
    )
}


def _optional_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class OAuthDeviceClient:
    """Drives the provider side of the device-code flow.

    Uses the shared HTTP client when the application lifespan has started it,
    a temporary client otherwise, or an explicit client when given one.
    """

    def __init__(
        self,
        config: OAuthConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._log = logger.bind(component="oauth_client")

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {"Accept": "application/json", **kwargs.pop("headers", {})}
        client = self._http_client or get_http_client()
        try:
            if client is not None:
                return await client.request(method, url, headers=headers, **kwargs)

            async with httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self._config.read_timeout,
                    connect=self._config.connect_timeout,
                ),
            ) as temp_client:
                return await temp_client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            self._log.error("oauth.request_error", url=url, error=str(e))
            raise ProviderNetworkError(f"Could not reach OAuth provider: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError("OAuth provider returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise ProviderError("OAuth provider returned an unexpected body")
        return body

    async def request_device_code(self) -> DeviceCodeResponse:
        """Ask the provider for a new device code.

        Raises:
            ProviderError: Network failure, error status or malformed body
        """
        response = await self._request(
            "POST",
            self._config.device_code_url,
            data={"client_id": self._config.client_id},
        )
        if response.status_code >= 400:
            self._log.error("oauth.device_code.failed", status=response.status_code)
            raise ProviderError(f"Could not request device code: {response.status_code}")

        body = self._json(response)
        try:
            return DeviceCodeResponse(
                device_code=str(body["device_code"]),
                user_code=str(body["user_code"]),
                verification_uri=str(body["verification_uri"]),
                expires_in=int(body["expires_in"]),
                interval=_optional_int(body.get("interval"))
                or self._config.default_interval_seconds,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError("Device code response is missing fields") from e

    async def poll_access_token(self, device_code: str) -> AccessTokenResponse:
        """Poll once for the access token of a device code.

        Raises:
            DeviceFlowError: A subclass for each known `error` code, the base
                class for unknown ones
            ProviderNetworkError: The provider could not be reached
            ProviderError: The body could not be decoded
        """
        response = await self._request(
            "POST",
            self._config.access_token_url,
            data={
                "client_id": self._config.client_id,
                "device_code": device_code,
                "grant_type": DEVICE_CODE_GRANT_TYPE,
            },
        )
        body = self._json(response)

        error = body.get("error")
        if error:
            description = body.get("error_description")
            self._log.info("oauth.poll.error", error=error, description=description)

            error_cls = _ERROR_CODES.get(error)
            if error_cls is SlowDown:
                raise SlowDown(description, interval=_optional_int(body.get("interval")))
            if error_cls is not None:
                raise error_cls(description)

            unknown = DeviceFlowError(description)
            unknown.code = str(error)
            raise unknown

        access_token = body.get("access_token")
        if not access_token:
            raise ProviderError("Access token response has no access_token")
        if not isinstance(access_token, str):
            raise ProviderError("Access token response has a non-string access_token")

        return AccessTokenResponse(
            access_token=access_token,
            token_type=body.get("token_type", ""),
            scope=body.get("scope", ""),
        )

    async def get_user_info(self, access_token: str) -> ProviderIdentity:
        """Fetch the identity behind an access token.

        Raises:
            ProviderError: Network failure, error status or missing fields
        """
        response = await self._request(
            "GET",
            self._config.identity_url,
            headers={
                "Accept": "application/vnd.github.v3+json",
                "Authorization": f"Bearer {access_token}",
            },
        )
        if response.status_code != 200:
            self._log.error("oauth.identity.failed", status=response.status_code)
            raise ProviderError(f"Could not fetch user info: {response.status_code}")

        body = self._json(response)
        login = body.get("login")
        node_id = body.get("node_id")
        if not login or not node_id:
            raise ProviderError("User info response is missing login or node_id")

        return ProviderIdentity(login=str(login), node_id=str(node_id))
