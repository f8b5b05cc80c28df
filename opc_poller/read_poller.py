"""
Read poller module for the OPC poller.

Emulates a subscription with periodic read requests. Subscriptions should
be preferred; this is a fallback for servers with broken subscription
support.
"""

import logging
from typing import TYPE_CHECKING, Optional

from opc_poller.events import EventDispatcher, SubscriptionListener, SubscriptionState
from opc_poller.poller import Poller, make_default_options
from opc_poller.service import ReadRequest, ReadRequestItem
from opc_poller.translate import values_from_read

if TYPE_CHECKING:
    from opc_poller.connection import Connection

logger = logging.getLogger(__name__)


class ReadPoller(Poller):
    """
    Poller issuing a read request every ``period`` milliseconds.

    Args:
        connection: The connection providing the service
        dispatcher: Worker delivering listener callbacks
        listener: Receives state and data changes, may be None
        period: Time between reads in milliseconds
        max_age: Maximum age of cached values in milliseconds, None lets
            the server decide
        retry_delay: Seconds to pause after a failed read, defaults to the
            period
    """

    KIND = "ReadPoller"

    def __init__(self,
                 connection: "Connection",
                 dispatcher: EventDispatcher,
                 listener: Optional[SubscriptionListener],
                 period: int,
                 max_age: Optional[int] = None,
                 retry_delay: Optional[float] = None):
        if period <= 0:
            raise ValueError(f"period must be positive: {period}")

        self.period = int(period)
        self.max_age = max_age
        self._active = False

        if retry_delay is None:
            retry_delay = self.period / 1000.0

        super().__init__(connection, dispatcher, listener, retry_delay)

    async def read_once(self) -> None:
        """Read the current item set once and report the values."""
        items = self._items
        handle_map = self._handle_map
        generation = self._generation

        if not items:
            logger.debug(f"{self.name}: No items registered. Skipping ...")
            return

        request = ReadRequest(
            options=make_default_options(),
            items=[ReadRequestItem(item.item_name, item.client_handle) for item in items],
            max_age=self.max_age,
        )

        logger.debug(f"{self.name}: Reading {len(items)} items")
        reply = await self._service().read(request)

        if generation != self._generation:
            # 읽는 동안 아이템이 변경됨, 결과 폐기
            return

        values = values_from_read(reply, handle_map)

        if not self._active:
            self._active = True
            self._fire_state_update(SubscriptionState.ACTIVE)

        self._fire_data_update(values)

    async def _poll_step(self) -> None:
        generation = self._generation
        await self.read_once()

        if self._items and self._running and generation == self._generation:
            await self._wait_for_signal(self.period / 1000.0)

    def _items_replaced(self) -> None:
        self._active = False

    def _invalidate(self) -> None:
        self._active = False
        super()._invalidate()
