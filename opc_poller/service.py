"""
Service module for the OPC poller.

This module defines the request and reply structures exchanged with a
data access service and the interface pollers use to talk to it. Concrete
services translate these calls to an actual transport.
"""

import datetime
from dataclasses import dataclass, field
from typing import Any, List, Optional


class ServiceError(Exception):
    """Raised when a service call fails at the transport or server."""


@dataclass(frozen=True)
class RequestOptions:
    """Options sent with every service request."""

    return_error_text: bool = True
    return_diagnostic_info: bool = True
    return_item_time: bool = True
    return_item_path: bool = False
    client_request_handle: Optional[str] = None


@dataclass(frozen=True)
class OpcError:
    """Error code definition returned alongside a reply."""

    id: str
    text: Optional[str] = None


@dataclass(frozen=True)
class RawItemValue:
    """Item value as it appears in a service reply."""

    client_item_handle: str
    item_name: Optional[str] = None
    item_path: Optional[str] = None
    value: Any = None
    quality: Optional[str] = None
    timestamp: Optional[datetime.datetime] = None
    result_id: Optional[str] = None
    diagnostic_info: Optional[str] = None


@dataclass(frozen=True)
class SubscribeRequestItem:
    item_name: str
    client_item_handle: str
    item_path: Optional[str] = None
    enable_buffering: bool = True
    requested_sampling_rate: Optional[int] = None


@dataclass(frozen=True)
class SubscribeRequest:
    """
    Request to create a subscription.

    Args:
        options: Request options
        items: Items to subscribe to
        return_values_on_reply: Whether the reply should carry initial values
        subscription_ping_rate: Milliseconds after which the server may drop
            the subscription when no refresh arrives
    """

    options: RequestOptions
    items: List[SubscribeRequestItem]
    return_values_on_reply: bool = False
    subscription_ping_rate: Optional[int] = None


@dataclass(frozen=True)
class SubscribeReply:
    server_sub_handle: Optional[str]
    items: List[RawItemValue] = field(default_factory=list)
    errors: List[OpcError] = field(default_factory=list)


@dataclass(frozen=True)
class PollRefreshRequest:
    """
    Long-poll refresh request.

    The server holds the request for up to ``wait_time`` milliseconds and
    returns earlier once data is available.
    """

    options: RequestOptions
    server_sub_handles: List[str]
    wait_time: int
    return_all_items: bool = False


@dataclass(frozen=True)
class RefreshItemList:
    """Items returned for one subscription handle of a refresh."""

    sub_handle: Optional[str]
    items: List[RawItemValue] = field(default_factory=list)


@dataclass(frozen=True)
class PollRefreshReply:
    item_lists: List[RefreshItemList] = field(default_factory=list)
    invalid_server_sub_handles: List[str] = field(default_factory=list)
    errors: List[OpcError] = field(default_factory=list)


@dataclass(frozen=True)
class ReadRequestItem:
    item_name: str
    client_item_handle: str
    item_path: Optional[str] = None


@dataclass(frozen=True)
class ReadRequest:
    """
    One-shot read request.

    Args:
        options: Request options
        items: Items to read
        max_age: Maximum age in milliseconds of cached values the server may
            return instead of reading from the device
    """

    options: RequestOptions
    items: List[ReadRequestItem]
    max_age: Optional[int] = None


@dataclass(frozen=True)
class ReadReply:
    items: List[RawItemValue] = field(default_factory=list)
    errors: List[OpcError] = field(default_factory=list)


class SubscriptionService:
    """
    Interface of a data access service.

    Implementations raise ServiceError for transport and server faults. All
    calls may be made concurrently by several pollers sharing a connection.
    """

    async def connect(self) -> None:
        """Establish the transport, if the service needs one."""

    async def subscribe(self, request: SubscribeRequest) -> SubscribeReply:
        raise NotImplementedError

    async def poll_refresh(self, request: PollRefreshRequest) -> PollRefreshReply:
        raise NotImplementedError

    async def cancel(self, server_sub_handle: str) -> None:
        raise NotImplementedError

    async def read(self, request: ReadRequest) -> ReadReply:
        raise NotImplementedError

    async def close(self) -> None:
        """Release transport resources."""
