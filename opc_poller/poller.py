"""
Poller module for the OPC poller.

This module provides the subscription poller, which emulates a continuous
subscription feed with long-poll refresh calls, and the base class shared
with the read poller.
"""

import asyncio
import itertools
import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Union

from opc_poller.events import EventDispatcher, SubscriptionListener, SubscriptionState
from opc_poller.items import ItemRequest, ItemValue
from opc_poller.service import (
    PollRefreshRequest,
    RequestOptions,
    ServiceError,
    SubscribeRequest,
    SubscribeRequestItem,
    SubscriptionService,
)
from opc_poller.translate import values_from_refresh, values_from_subscribe

if TYPE_CHECKING:
    from opc_poller.connection import Connection

logger = logging.getLogger(__name__)

DEFAULT_SAMPLING_RATE = 100  # ms
# 서버가 죽은 클라이언트를 감지할 수 있도록 wait time 의 배수로 ping rate 설정
PING_RATE_FACTOR = 4

_POLLER_COUNTER = itertools.count(1)


def make_default_options() -> RequestOptions:
    return RequestOptions(
        return_error_text=True,
        return_diagnostic_info=True,
        return_item_time=True,
    )


class Poller:
    """
    Base class of pollers.

    A poller owns an item set and a background task which acquires values
    for it. State and data changes are reported to the listener through the
    connection's event dispatcher. The task is started on construction, so
    pollers must be created while an event loop is running.
    """

    KIND = "Poller"

    def __init__(self,
                 connection: "Connection",
                 dispatcher: EventDispatcher,
                 listener: Optional[SubscriptionListener],
                 retry_delay: float = 0.0):
        self.connection = connection
        self.dispatcher = dispatcher
        self.listener = listener
        self.retry_delay = retry_delay
        self.name = f"{self.KIND}/{connection}/{next(_POLLER_COUNTER)}"

        self._task_counter = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._items: List[ItemRequest] = []
        self._handle_map: Dict[str, ItemRequest] = {}
        self._generation = 0
        self._wakeup = asyncio.Event()

        self.state: Optional[SubscriptionState] = None

        self.start()

    def __str__(self) -> str:
        return self.name

    @property
    def running(self) -> bool:
        return self._running

    @property
    def items(self) -> List[ItemRequest]:
        return list(self._items)

    @property
    def handle_map(self) -> Dict[str, ItemRequest]:
        return dict(self._handle_map)

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> None:
        """Start the poll task. Does nothing while one is running."""
        if self._task is not None and not self._task.done():
            return

        self._running = True
        task_name = f"{self.name}/{next(self._task_counter)}"
        self._task = asyncio.get_running_loop().create_task(self._run(), name=task_name)

    def set_items(self, items: Iterable[Union[ItemRequest, str]]) -> None:
        """
        Replace the item set.

        Plain strings are turned into requests using the item name as client
        handle. Client handles are not checked for uniqueness; a later request
        with the same handle shadows an earlier one.

        Args:
            items: Item requests or item names
        """
        requests = [ItemRequest(item, item) if isinstance(item, str) else item for item in items]

        self._items_replaced()
        self._fire_state_update(SubscriptionState.INACTIVE)

        self._items = requests
        self._handle_map = {request.client_handle: request for request in requests}
        self._generation += 1

        self._wakeup.set()

    async def dispose(self) -> None:
        """
        Stop the poller.

        The poll task finishes its current step and exits. No events are
        reported afterwards. Calling this more than once is harmless.
        """
        logger.info(f"{self.name}: Disposing")
        self._running = False
        self._wakeup.set()
        await self._dispose_at_server()

    async def wait_closed(self) -> None:
        """Wait for the poll task to exit."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def _service(self) -> SubscriptionService:
        return self.connection.unwrap()

    def _items_replaced(self) -> None:
        pass

    async def _dispose_at_server(self) -> None:
        pass

    async def _poll_step(self) -> None:
        raise NotImplementedError

    def _invalidate(self) -> None:
        self._fire_state_update(SubscriptionState.INACTIVE)

    async def _wait_for_signal(self, timeout: Optional[float] = None) -> None:
        """Block until set_items or dispose is called, or the timeout expires."""
        self._wakeup.clear()
        if timeout is None:
            await self._wakeup.wait()
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        logger.info(f"{self.name}: Starting poller")
        try:
            self._fire_state_update(SubscriptionState.INACTIVE)
            while self._running:
                failed = False
                try:
                    await self._poll_step()

                    if not self._items and self._running:
                        logger.info(f"{self.name}: Waiting for items")
                        self._fire_state_update(SubscriptionState.WAITING)
                        await self._wait_for_signal()
                except Exception as e:
                    logger.warning(f"{self.name}: Failed to poll: {e}", exc_info=True)
                    self._invalidate()
                    failed = True

                if failed and self.retry_delay > 0 and self._running:
                    await self._wait_for_signal(self.retry_delay)
        finally:
            logger.info(f"{self.name}: Exit poll loop")

    def _fire_state_update(self, state: SubscriptionState) -> None:
        if not self._running:
            return
        self.state = state
        if self.listener is None:
            return
        self.dispatcher.execute(self.listener.state_change, state)

    def _fire_data_update(self, values: Dict[str, ItemValue]) -> None:
        if not self._running or not values or self.listener is None:
            return
        self.dispatcher.execute(self.listener.data_change, values)


class SubscriptionPoller(Poller):
    """
    Poller based on a server side subscription.

    The poller subscribes to the item set and then issues long-poll refresh
    calls which the server holds for up to ``wait_time`` milliseconds. When
    the server reports the subscription handle as invalid, or any call
    fails, the subscription is set up again on the next iteration. A
    subscription dropped by the client, because the item set was replaced
    or a call failed, is cancelled at the server before the next setup.

    Args:
        connection: The connection providing the service
        dispatcher: Worker delivering listener callbacks
        listener: Receives state and data changes, may be None
        wait_time: Long-poll wait time in milliseconds
        sampling_rate: Requested sampling rate in milliseconds
        retry_delay: Seconds to pause after a failed setup or refresh
    """

    KIND = "SubscriptionPoller"

    def __init__(self,
                 connection: "Connection",
                 dispatcher: EventDispatcher,
                 listener: Optional[SubscriptionListener],
                 wait_time: int,
                 sampling_rate: Optional[int] = DEFAULT_SAMPLING_RATE,
                 retry_delay: float = 0.0):
        if wait_time <= 0:
            raise ValueError(f"wait_time must be positive: {wait_time}")

        self.wait_time = int(wait_time)
        self.sampling_rate = sampling_rate
        self._subscription_handle: Optional[str] = None
        # handles dropped by the client which still have to be cancelled
        self._abandoned: List[str] = []

        super().__init__(connection, dispatcher, listener, retry_delay)

    @property
    def subscription_handle(self) -> Optional[str]:
        return self._subscription_handle

    async def setup(self) -> None:
        """
        Subscribe to the current item set.

        Does nothing when the item set is empty.
        """
        items = self._items
        handle_map = self._handle_map
        generation = self._generation

        if not items:
            logger.debug(f"{self.name}: No items registered. Skipping ...")
            return

        request = SubscribeRequest(
            options=make_default_options(),
            items=[
                SubscribeRequestItem(
                    item_name=item.item_name,
                    client_item_handle=item.client_handle,
                    enable_buffering=True,
                    requested_sampling_rate=self.sampling_rate,
                )
                for item in items
            ],
            return_values_on_reply=True,
            subscription_ping_rate=self.wait_time * PING_RATE_FACTOR,
        )

        reply = await self._service().subscribe(request)

        if not reply.server_sub_handle:
            raise ServiceError("Server returned no subscription handle")

        if generation != self._generation or not self._running:
            # 구독 중에 아이템이 변경되었거나 폐기됨
            logger.info(f"{self.name}: Item set changed during setup, dropping {reply.server_sub_handle}")
            await self._cancel_at_server(reply.server_sub_handle)
            return

        values = values_from_subscribe(reply, handle_map)
        self._fire_data_update(values)

        self._subscription_handle = reply.server_sub_handle
        self._fire_state_update(SubscriptionState.ACTIVE)

    async def poll_once(self) -> None:
        """
        Issue one long-poll refresh for the current subscription.

        Does nothing without a subscription handle.
        """
        handle = self._subscription_handle
        if handle is None:
            return
        handle_map = self._handle_map

        request = PollRefreshRequest(
            options=make_default_options(),
            server_sub_handles=[handle],
            wait_time=self.wait_time,
        )

        logger.debug(f"{self.name}: Enter poll")
        reply = await self._service().poll_refresh(request)
        logger.debug(f"{self.name}: Poll returned")

        if self._subscription_handle != handle:
            # someone cancelled our subscription from outside
            return

        if handle in (reply.invalid_server_sub_handles or ()):
            logger.info(f"{self.name}: Invalidating: {handle}")
            # 서버에서 이미 삭제된 구독이므로 취소하지 않음
            self._subscription_handle = None
            self._invalidate()
        else:
            self._fire_data_update(values_from_refresh(reply, handle_map))

    async def _poll_step(self) -> None:
        await self._cancel_abandoned()

        if self._subscription_handle is None:
            logger.info(f"{self.name}: Performing setup")
            await self.setup()
            logger.info(f"{self.name}: Setup complete")

        if self._subscription_handle is not None:
            logger.debug(f"{self.name}: Performing poll")
            await self.poll_once()

    def _items_replaced(self) -> None:
        self._abandon_subscription()

    def _invalidate(self) -> None:
        self._abandon_subscription()
        super()._invalidate()

    def _abandon_subscription(self) -> None:
        handle, self._subscription_handle = self._subscription_handle, None
        if handle is not None:
            logger.info(f"{self.name}: Dropping subscription {handle}")
            self._abandoned.append(handle)

    async def _cancel_abandoned(self) -> None:
        while self._abandoned:
            await self._cancel_at_server(self._abandoned.pop(0))

    async def _dispose_at_server(self) -> None:
        self._abandon_subscription()

        if self._abandoned:
            logger.info(f"{self.name}: Disposing at server...")
            await self._cancel_abandoned()
            logger.info(f"{self.name}: Disposing at server...done!")

    async def _cancel_at_server(self, handle: str) -> None:
        try:
            await self._service().cancel(handle)
        except Exception as e:
            logger.warning(f"{self.name}: Failed to cancel subscription {handle}: {e}", exc_info=True)
