"""
OPC UA service for the OPC poller.

This module implements the subscribe / poll refresh / cancel / read calls on
top of an OPC UA server using asyncua. Every subscribe call creates one UA
subscription; data change notifications are buffered until the next poll
refresh collects them.
"""

import asyncio
import itertools
import logging
import math
from typing import Dict, List, Optional, Tuple

from asyncua import Client, ua
from asyncua.common.node import Node

from opc_poller.service import (
    OpcError,
    PollRefreshReply,
    PollRefreshRequest,
    RawItemValue,
    ReadReply,
    ReadRequest,
    RefreshItemList,
    ServiceError,
    SubscribeReply,
    SubscribeRequest,
    SubscriptionService,
)
from opc_poller.utils import safe_repr, to_utc, variant_to_python

logger = logging.getLogger(__name__)

# 구독 기본값
DEFAULT_PUBLISHING_INTERVAL = 1000.0  # ms
DEFAULT_MAX_KEEP_ALIVE_COUNT = 10
DEFAULT_PRIORITY = 0

# 연결 확인에 사용하는 서버 시간 노드 (모든 OPC UA 서버에서 지원)
SERVER_TIME_NODE = "i=2258"

_STATUS_SEVERITY_MASK = 0xC0000000
_STATUS_UNCERTAIN = 0x40000000


def validate_subscription_parameters(period: float, lifetime_count: int,
                                     max_keep_alive_count: int) -> Tuple[float, int, int]:
    """
    Validate subscription parameters and adjust them if required.

    Args:
        period: Publishing interval (ms)
        lifetime_count: Lifetime count
        max_keep_alive_count: Max keep-alive count

    Returns:
        Tuple of validated (period, lifetime_count, max_keep_alive_count)
    """
    # lifetime_count 는 max_keep_alive_count 의 최소 3배 이상이어야 함
    min_lifetime = max_keep_alive_count * 3
    if lifetime_count < min_lifetime:
        logger.debug(f"lifetime_count({lifetime_count}) too small, adjusting to {min_lifetime}")
        lifetime_count = min_lifetime

    return period, lifetime_count, max_keep_alive_count


def make_subscription_parameters(period: float, ping_rate: Optional[int]) -> ua.CreateSubscriptionParameters:
    """
    Build UA subscription parameters for a publishing interval and ping rate.

    The lifetime is chosen so that the server drops the subscription once no
    publish request arrived for roughly the ping rate.
    """
    max_keep_alive_count = DEFAULT_MAX_KEEP_ALIVE_COUNT
    if ping_rate:
        lifetime_count = int(math.ceil(ping_rate / period))
        max_keep_alive_count = max(1, min(max_keep_alive_count, lifetime_count // 3))
    else:
        lifetime_count = 0

    period, lifetime_count, max_keep_alive_count = validate_subscription_parameters(
        period, lifetime_count, max_keep_alive_count
    )

    params = ua.CreateSubscriptionParameters()
    params.RequestedPublishingInterval = period
    params.RequestedLifetimeCount = lifetime_count
    params.RequestedMaxKeepAliveCount = max_keep_alive_count
    params.MaxNotificationsPerPublish = 0  # 0 means no limit
    params.PublishingEnabled = True
    params.Priority = DEFAULT_PRIORITY
    return params


def quality_from_status(status: Optional[ua.StatusCode]) -> str:
    if status is None:
        return "good"
    severity = status.value & _STATUS_SEVERITY_MASK
    if severity == 0:
        return "good"
    if severity == _STATUS_UNCERTAIN:
        return "uncertain"
    return "bad"


def data_value_to_raw(client_handle: str, item_name: str, data_value: ua.DataValue) -> RawItemValue:
    """
    Convert an OPC UA DataValue to a raw item value.

    Args:
        client_handle: Client handle of the item
        item_name: The requested item name
        data_value: The value as received from the server

    Returns:
        The raw item value
    """
    status = getattr(data_value, "StatusCode", None)
    variant = getattr(data_value, "Value", None)
    timestamp = data_value.SourceTimestamp or data_value.ServerTimestamp

    quality = quality_from_status(status)
    return RawItemValue(
        client_item_handle=client_handle,
        item_name=item_name,
        value=variant_to_python(variant) if variant is not None else None,
        quality=quality,
        timestamp=to_utc(timestamp),
        result_id=None if quality == "good" else status.name,
    )


def status_error(status: ua.StatusCode) -> OpcError:
    return OpcError(status.name, status.doc)


def _errors_of(items: List[RawItemValue], errors: Dict[str, OpcError]) -> List[OpcError]:
    for item in items:
        if item.result_id and item.result_id not in errors:
            errors[item.result_id] = OpcError(item.result_id)
    return list(errors.values())


class _UaSubscription:
    """
    One UA subscription and the values buffered for it.

    Implements the asyncua subscription handler interface.
    """

    def __init__(self, handle: str):
        self.handle = handle
        self.subscription = None
        self.handles_by_node: Dict[ua.NodeId, List[Tuple[str, str]]] = {}
        self.pending: Dict[str, RawItemValue] = {}
        self.changed = asyncio.Event()
        self.valid = True

    def add_item(self, node: Node, client_handle: str, item_name: str) -> None:
        self.handles_by_node.setdefault(node.nodeid, []).append((client_handle, item_name))

    def datachange_notification(self, node: Node, val, data) -> None:
        data_value = data.monitored_item.Value
        for client_handle, item_name in self.handles_by_node.get(node.nodeid, ()):
            self.pending[client_handle] = data_value_to_raw(client_handle, item_name, data_value)
        self.changed.set()

    def status_change_notification(self, status) -> None:
        logger.info(f"Subscription {self.handle} status changed: {safe_repr(status)}")
        self.valid = False
        self.changed.set()

    def event_notification(self, event) -> None:
        pass

    def take(self) -> List[RawItemValue]:
        items = list(self.pending.values())
        self.pending.clear()
        self.changed.clear()
        return items


class UaSubscriptionService(SubscriptionService):
    """
    Service backed by an OPC UA server.

    Item names are OPC UA node ids, e.g. "ns=2;s=Temp.Value".

    Args:
        server_url: The URL of the OPC UA server
        user: Optional user name
        password: Optional password
        connect_timeout: Connect timeout in milliseconds
        request_timeout: Request timeout in milliseconds
    """

    def __init__(self,
                 server_url: str,
                 user: Optional[str] = None,
                 password: Optional[str] = None,
                 connect_timeout: int = 5000,
                 request_timeout: int = 10000):
        self.server_url = server_url
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout

        self.client: Optional[Client] = None
        self._connected = False
        self._connect_lock = asyncio.Lock()
        self._subscriptions: Dict[str, _UaSubscription] = {}
        self._handle_counter = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._connected:
                return

            client = Client(self.server_url, timeout=self.request_timeout / 1000.0)
            if self.user:
                client.set_user(self.user)
            if self.password:
                client.set_password(self.password)

            try:
                await asyncio.wait_for(client.connect(), self.connect_timeout / 1000.0)
            except Exception as e:
                raise ServiceError(f"Failed to connect to {self.server_url}: {e}") from e

            self.client = client
            self._connected = True
            logger.info(f"Connected to {self.server_url}")

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await self._delete(subscription)
        self._subscriptions.clear()
        await self._disconnect()

    async def subscribe(self, request: SubscribeRequest) -> SubscribeReply:
        await self.connect()

        handle = f"{self.server_url}#{next(self._handle_counter)}"
        subscription = _UaSubscription(handle)

        rates = [item.requested_sampling_rate for item in request.items if item.requested_sampling_rate]
        period = float(min(rates)) if rates else DEFAULT_PUBLISHING_INTERVAL

        failed: List[RawItemValue] = []
        errors: Dict[str, OpcError] = {}
        nodes: List[Node] = []
        requested: List[Tuple[Node, str, str]] = []

        for item in request.items:
            try:
                node = self.client.get_node(item.item_name)
            except Exception as e:
                logger.debug(f"Invalid node id {item.item_name}: {e}")
                status = ua.StatusCode(ua.StatusCodes.BadNodeIdInvalid)
                failed.append(RawItemValue(item.client_item_handle, item.item_name, quality="bad", result_id=status.name))
                errors[status.name] = status_error(status)
                continue
            subscription.add_item(node, item.client_item_handle, item.item_name)
            nodes.append(node)
            requested.append((node, item.client_item_handle, item.item_name))

        try:
            subscription.subscription = await self.client.create_subscription(
                make_subscription_parameters(period, request.subscription_ping_rate), subscription
            )
            results = []
            if nodes:
                results = await subscription.subscription.subscribe_data_change(nodes, sampling_interval=period)
        except Exception as e:
            await self._delete(subscription)
            await self._handle_failure(e)
            raise ServiceError(f"Failed to subscribe: {e}") from e

        for (node, client_handle, item_name), result in zip(requested, results):
            if isinstance(result, ua.StatusCode):
                failed.append(RawItemValue(client_handle, item_name, quality="bad", result_id=result.name))
                errors[result.name] = status_error(result)

        self._subscriptions[handle] = subscription
        logger.info(f"Created subscription {handle} with {len(nodes)} items, period {period}ms")

        items = list(failed)
        if request.return_values_on_reply and requested:
            items.extend(await self._read_values(requested, 0))

        return SubscribeReply(server_sub_handle=handle, items=items, errors=_errors_of(items, errors))

    async def poll_refresh(self, request: PollRefreshRequest) -> PollRefreshReply:
        subscriptions: List[_UaSubscription] = []
        invalid: List[str] = []

        for handle in request.server_sub_handles:
            subscription = self._subscriptions.get(handle)
            if subscription is None or not subscription.valid:
                invalid.append(handle)
                await self._discard(handle)
            else:
                subscriptions.append(subscription)

        if subscriptions and not any(s.pending or not s.valid for s in subscriptions):
            waiters = [asyncio.ensure_future(s.changed.wait()) for s in subscriptions]
            try:
                done, _ = await asyncio.wait(waiters, timeout=request.wait_time / 1000.0,
                                             return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
            if not done:
                await self._check_connection()

        item_lists = []
        all_items: List[RawItemValue] = []
        for subscription in subscriptions:
            if not subscription.valid or not self._connected:
                invalid.append(subscription.handle)
                await self._discard(subscription.handle)
                continue
            items = subscription.take()
            all_items.extend(items)
            item_lists.append(RefreshItemList(subscription.handle, items))

        return PollRefreshReply(
            item_lists=item_lists,
            invalid_server_sub_handles=invalid,
            errors=_errors_of(all_items, {}),
        )

    async def cancel(self, server_sub_handle: str) -> None:
        subscription = self._subscriptions.pop(server_sub_handle, None)
        if subscription is None:
            logger.debug(f"Cancel of unknown subscription {server_sub_handle}")
            return
        await self._delete(subscription, raise_errors=True)
        logger.info(f"Deleted subscription {server_sub_handle}")

    async def read(self, request: ReadRequest) -> ReadReply:
        await self.connect()

        failed: List[RawItemValue] = []
        errors: Dict[str, OpcError] = {}
        requested: List[Tuple[Node, str, str]] = []

        for item in request.items:
            try:
                node = self.client.get_node(item.item_name)
            except Exception:
                status = ua.StatusCode(ua.StatusCodes.BadNodeIdInvalid)
                failed.append(RawItemValue(item.client_item_handle, item.item_name, quality="bad", result_id=status.name))
                errors[status.name] = status_error(status)
                continue
            requested.append((node, item.client_item_handle, item.item_name))

        items = failed
        if requested:
            items = failed + await self._read_values(requested, request.max_age or 0)

        return ReadReply(items=items, errors=_errors_of(items, errors))

    async def _read_values(self, requested: List[Tuple[Node, str, str]], max_age: int) -> List[RawItemValue]:
        params = ua.ReadParameters()
        params.MaxAge = max_age
        params.TimestampsToReturn = ua.TimestampsToReturn.Both
        for node, _, _ in requested:
            read_value = ua.ReadValueId()
            read_value.NodeId = node.nodeid
            read_value.AttributeId = ua.AttributeIds.Value
            params.NodesToRead.append(read_value)

        try:
            results = await self.client.uaclient.read(params)
        except Exception as e:
            await self._handle_failure(e)
            raise ServiceError(f"Failed to read values: {e}") from e

        return [
            data_value_to_raw(client_handle, item_name, data_value)
            for (_, client_handle, item_name), data_value in zip(requested, results)
        ]

    async def _check_connection(self) -> None:
        if not self._connected:
            return
        try:
            await self.client.get_node(SERVER_TIME_NODE).read_value()
        except Exception as e:
            logger.warning(f"Connection check failed: {e}")
            await self._handle_failure(e)

    async def _handle_failure(self, error: Exception) -> None:
        # 연결 오류인 경우 모든 구독을 무효화하고 다음 호출에서 재연결
        if isinstance(error, (ConnectionError, OSError, asyncio.TimeoutError)):
            for subscription in self._subscriptions.values():
                subscription.valid = False
            await self._disconnect()

    async def _discard(self, handle: str) -> None:
        # 무효화된 구독도 세션이 살아있으면 서버에서 삭제
        subscription = self._subscriptions.pop(handle, None)
        if subscription is not None:
            await self._delete(subscription)

    async def _delete(self, subscription: _UaSubscription, raise_errors: bool = False) -> None:
        if subscription.subscription is None or not self._connected:
            return
        try:
            await subscription.subscription.delete()
        except Exception as e:
            if raise_errors:
                raise ServiceError(f"Failed to delete subscription {subscription.handle}: {e}") from e
            logger.debug(f"Failed to delete subscription {subscription.handle}: {e}")

    async def _disconnect(self) -> None:
        client, self.client = self.client, None
        was_connected, self._connected = self._connected, False
        if client is not None and was_connected:
            try:
                await client.disconnect()
            except Exception as e:
                logger.debug(f"Error during disconnect (ignored): {e}")
