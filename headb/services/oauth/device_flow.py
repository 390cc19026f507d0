"""Device-flow poller.

One poller runs per sign-in, detached from the request that started it. It
polls the provider's token endpoint until the user authorizes the device
code, refuses it, or the code expires, and moves the scratch user to its
final state.

State machine:
    polling --pending--> polling
    polling --slow_down--> backing_off --> polling
    polling --access_denied / expired_token--> rejected (user denied)
    polling --incorrect_* / unsupported / unknown / network--> rejected (user dropped)
    polling --access token--> succeeded (user accepted or adopted)
    deadline reached --> expired (user left pending)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from enum import Enum

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from headb.db.session import get_async_session
from headb.models.user import UserStatus
from headb.services.api_key import ApiKeyService
from headb.services.oauth.client import (
    AccessDenied,
    AccessTokenResponse,
    AuthorizationPending,
    DeviceCodeResponse,
    DeviceFlowError,
    ExpiredToken,
    OAuthDeviceClient,
    ProviderError,
    SlowDown,
)
from headb.services.tokens import ProviderTokenCipher
from headb.services.users import UserService

logger = structlog.get_logger()

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]
Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class PollState(str, Enum):
    POLLING = "polling"
    BACKING_OFF = "backing_off"
    REJECTED = "rejected"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"


def next_interval(current: float, server_interval: int | None) -> float:
    """Interval to use after a slow_down answer. Never decreases."""
    proposed = server_interval if server_interval else current * 2
    return max(current, proposed)


class DeviceFlowPoller:
    """Polls one device code to completion.

    Storage steps each use a fresh session from `session_factory`, so a
    failed step never leaves a half-applied transaction behind.
    """

    def __init__(
        self,
        *,
        client: OAuthDeviceClient,
        cipher: ProviderTokenCipher,
        user_id: str,
        device_code: DeviceCodeResponse,
        session_factory: SessionFactory = get_async_session,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._client = client
        self._cipher = cipher
        self._user_id = user_id
        self._device_code = device_code
        self._session_factory = session_factory
        self._sleep = sleep
        self._clock = clock

        self._state = PollState.POLLING
        self._interval = float(device_code.interval)
        self._log = logger.bind(component="device_flow", user_id=user_id)

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def interval(self) -> float:
        return self._interval

    async def run(self) -> PollState:
        """Poll until a terminal state is reached and return it."""
        deadline = self._clock() + self._device_code.expires_in
        self._log.info(
            "device_flow.started",
            expires_in=self._device_code.expires_in,
            interval=self._interval,
        )

        while self._clock() < deadline:
            self._state = PollState.POLLING
            try:
                token = await self._client.poll_access_token(self._device_code.device_code)
            except AuthorizationPending:
                await self._wait(deadline)
                continue
            except SlowDown as e:
                self._state = PollState.BACKING_OFF
                self._interval = next_interval(self._interval, e.interval)
                self._log.info("device_flow.slow_down", interval=self._interval)
                await self._wait(deadline)
                continue
            except (AccessDenied, ExpiredToken) as e:
                return await self._deny(e.code)
            except DeviceFlowError as e:
                return await self._drop(e.code)
            except ProviderError as e:
                self._log.warning("device_flow.provider_error", error=str(e))
                return await self._drop("provider_error")

            return await self._accept(token)

        self._state = PollState.EXPIRED
        self._log.info("device_flow.expired")
        return self._state

    async def _wait(self, deadline: float) -> None:
        remaining = deadline - self._clock()
        await self._sleep(max(0.0, min(self._interval, remaining)))

    async def _accept(self, token: AccessTokenResponse) -> PollState:
        try:
            identity = await self._client.get_user_info(token.access_token)
            sealed = self._cipher.encrypt(token.access_token)
        except (ProviderError, ValueError) as e:
            self._log.warning("device_flow.identity_failed", error=str(e))
            return await self._drop("identity_failed")

        try:
            async with self._session_factory() as session:
                users = UserService(session)
                scratch = await users.get(self._user_id)
                if scratch is None:
                    self._log.warning("device_flow.scratch_user_missing")
                    self._state = PollState.REJECTED
                    return self._state

                user = scratch
                existing = await users.find_by_external_id(identity.node_id)
                if existing is not None and existing.id != scratch.id:
                    # Returning user: keys minted at sign-in move to the known account
                    await ApiKeyService(session).transfer(scratch.id, existing.id)
                    await users.delete(scratch)
                    user = existing

                user.username = identity.login
                user.external_id = identity.node_id
                user.token = sealed
                user.status = UserStatus.ACCEPTED
                await users.save(user)
                account_id = user.id
        except SQLAlchemyError as e:
            self._log.error("device_flow.store_failed", step="accept", error=str(e))
            return await self._drop("store_failed")

        self._state = PollState.SUCCEEDED
        self._log.info(
            "device_flow.succeeded",
            account_id=account_id,
            adopted=account_id != self._user_id,
        )
        return self._state

    async def _deny(self, reason: str) -> PollState:
        self._state = PollState.REJECTED
        try:
            async with self._session_factory() as session:
                users = UserService(session)
                user = await users.get(self._user_id)
                if user is not None:
                    user.status = UserStatus.DENIED
                    await users.save(user)
        except SQLAlchemyError as e:
            self._log.error("device_flow.store_failed", step="deny", error=str(e))
            return await self._drop(reason)

        self._log.info("device_flow.denied", reason=reason)
        return self._state

    async def _drop(self, reason: str) -> PollState:
        self._state = PollState.REJECTED
        try:
            async with self._session_factory() as session:
                users = UserService(session)
                user = await users.get(self._user_id)
                if user is not None:
                    await users.purge(user)
        except SQLAlchemyError as e:
            self._log.error("device_flow.store_failed", step="drop", error=str(e))
            return self._state

        self._log.info("device_flow.dropped", reason=reason)
        return self._state
