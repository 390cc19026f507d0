"""Background task registry for device-flow pollers."""

from __future__ import annotations

import asyncio

import structlog

from headb.services.oauth.device_flow import DeviceFlowPoller, PollState

logger = structlog.get_logger()


class DeviceFlowRegistry:
    """Owns the asyncio tasks of running pollers.

    Tasks are kept referenced until they finish and cancelled on application
    shutdown; nothing else stops a poller early.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._log = logger.bind(service="device_flow_registry")

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, poller: DeviceFlowPoller) -> asyncio.Task:
        task = asyncio.create_task(self._run(poller), name=f"device-flow-{poller.user_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, poller: DeviceFlowPoller) -> PollState | None:
        try:
            return await poller.run()
        except asyncio.CancelledError:
            self._log.info("device_flow.cancelled", user_id=poller.user_id)
            raise
        except Exception as e:
            self._log.exception("device_flow.crashed", user_id=poller.user_id, error=str(e))
            return None

    async def shutdown(self) -> None:
        """Cancel every running poller and wait for them to unwind."""
        if not self._tasks:
            return

        tasks = list(self._tasks)
        self._log.info("device_flow.shutdown", count=len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


device_flow_registry = DeviceFlowRegistry()
