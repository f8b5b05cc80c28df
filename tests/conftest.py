import asyncio
import inspect

import pytest

from opc_poller.events import SubscriptionListener
from opc_poller.service import ServiceError, SubscriptionService

SERVER_URL = "opc.tcp://test-server:4840"


class FakeService(SubscriptionService):
    """
    Scripted service.

    Each call takes the next step of its script: an exception is raised, a
    callable is called with the request, anything else is returned. With
    the script exhausted the call blocks until release() is called.
    """

    def __init__(self):
        self.calls = []
        self.subscribe_steps = []
        self.refresh_steps = []
        self.read_steps = []
        self.cancel_error = None
        self.closed = False
        self._released = None
        self._release_requested = False

    def names(self):
        return [name for name, _ in self.calls]

    def count(self, name):
        return self.names().count(name)

    def release(self):
        self._release_requested = True
        if self._released is not None:
            self._released.set()

    async def _step(self, steps, request):
        if not steps:
            if self._released is None:
                self._released = asyncio.Event()
                if self._release_requested:
                    self._released.set()
            await self._released.wait()
            await asyncio.sleep(0.01)
            raise ServiceError("released")

        step = steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            result = step(request)
            if inspect.isawaitable(result):
                result = await result
            return result
        return step

    async def subscribe(self, request):
        self.calls.append(("subscribe", request))
        return await self._step(self.subscribe_steps, request)

    async def poll_refresh(self, request):
        self.calls.append(("poll_refresh", request))
        return await self._step(self.refresh_steps, request)

    async def cancel(self, server_sub_handle):
        self.calls.append(("cancel", server_sub_handle))
        if self.cancel_error is not None:
            raise self.cancel_error

    async def read(self, request):
        self.calls.append(("read", request))
        return await self._step(self.read_steps, request)

    async def close(self):
        self.release()
        self.closed = True


class RecordingListener(SubscriptionListener):

    def __init__(self):
        self.states = []
        self.data = []

    def state_change(self, state):
        self.states.append(state)

    def data_change(self, values):
        self.data.append(values)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def shutdown(connection, service, *pollers):
    """Dispose pollers, unblock parked calls and close the connection."""
    for poller in pollers:
        await poller.dispose()
    service.release()
    await connection.close()


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def listener():
    return RecordingListener()
