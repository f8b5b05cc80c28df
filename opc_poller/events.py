"""
Event module for the OPC poller.

This module provides the listener interface and the worker that delivers
listener callbacks in order, off the poll loop.
"""

import asyncio
import enum
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from opc_poller.items import ItemValue

logger = logging.getLogger(__name__)


class SubscriptionState(enum.Enum):
    INACTIVE = "inactive"
    WAITING = "waiting"
    ACTIVE = "active"


class SubscriptionListener:
    """
    Receives state and data changes of a poller.

    Methods may be plain functions or coroutines. They are always called on
    the connection's event worker, one at a time and in the order the poller
    raised them.
    """

    def state_change(self, state: SubscriptionState) -> None:
        pass

    def data_change(self, values: Dict[str, ItemValue]) -> None:
        pass


class EventDispatcher:
    """
    Single worker that runs queued callbacks strictly in order.

    The worker task is started on first use. A callback raising an exception
    is logged and does not affect later callbacks.
    """

    def __init__(self, name: str):
        self.name = name
        self._queue: "asyncio.Queue" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def execute(self, func: Callable[..., Any], *args: Any) -> None:
        """
        Queue a callback.

        Args:
            func: Function or coroutine function to call
            args: Arguments for the call
        """
        if self._closed:
            logger.debug(f"{self.name}: dispatcher closed, dropping event")
            return

        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

        self._queue.put_nowait((func, args))

    async def _run(self) -> None:
        while True:
            func, args = await self._queue.get()
            try:
                if func is None:
                    return
                result = func(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{self.name}: error in event callback: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until all queued callbacks have run."""
        if self._task is not None:
            await self._queue.join()

    async def shutdown(self, timeout: float) -> None:
        """
        Stop accepting callbacks, run the queued ones and stop the worker.

        Args:
            timeout: Seconds to wait for queued callbacks before the worker
                is cancelled
        """
        if self._closed:
            return
        self._closed = True

        if self._task is None:
            return

        self._queue.put_nowait((None, ()))
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name}: pending events not delivered within {timeout}s, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
