"""OAuth device authorization flow."""

from headb.services.oauth.client import (
    AccessDenied,
    AccessTokenResponse,
    AuthorizationPending,
    DeviceCodeResponse,
    DeviceFlowError,
    ExpiredToken,
    IncorrectClientCredentials,
    IncorrectDeviceCode,
    OAuthDeviceClient,
    ProviderError,
    ProviderIdentity,
    ProviderNetworkError,
    SlowDown,
    UnsupportedGrantType,
)
from headb.services.oauth.device_flow import DeviceFlowPoller, PollState, next_interval
from headb.services.oauth.lifecycle import DeviceFlowRegistry, device_flow_registry

__all__ = [
    "AccessDenied",
    "AccessTokenResponse",
    "AuthorizationPending",
    "DeviceCodeResponse",
    "DeviceFlowError",
    "DeviceFlowPoller",
    "DeviceFlowRegistry",
    "ExpiredToken",
    "IncorrectClientCredentials",
    "IncorrectDeviceCode",
    "OAuthDeviceClient",
    "PollState",
    "ProviderError",
    "ProviderIdentity",
    "ProviderNetworkError",
    "SlowDown",
    "UnsupportedGrantType",
    "device_flow_registry",
    "next_interval",
]
