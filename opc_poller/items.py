"""
Item module for the OPC poller.

This module provides the request and value types exchanged with pollers.
"""

import datetime
import enum
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from opc_poller.utils import format_timestamp


class State(enum.Enum):
    """Quality of an item value."""

    GOOD = "good"
    UNCERTAIN = "uncertain"
    BAD = "bad"


@dataclass(frozen=True)
class ErrorInformation:
    """
    Error reported by the server for a single item.

    Args:
        code: The result id as reported by the server
        text: Human readable text, if the server supplied one
    """

    code: str
    text: Optional[str] = None

    def __str__(self) -> str:
        return f"[Error - code: {self.code}, text: {self.text}]"


@dataclass(frozen=True)
class ItemRequest:
    """
    A single item to acquire.

    The client handle identifies the item in every reply and must be unique
    within one item set.
    """

    client_handle: str
    item_name: str


@dataclass(frozen=True)
class ItemValue:
    """
    Snapshot of an item value as delivered to listeners.
    """

    item_name: str
    item_path: Optional[str]
    value: Any
    state: State
    timestamp: Optional[datetime.datetime]
    error_information: Optional[ErrorInformation] = None

    def __str__(self) -> str:
        base = (f"[ItemValue - name: {self.item_name}, value: {self.value}, "
                f"timestamp: {format_timestamp(self.timestamp)}, state: {self.state.name} ]")
        if self.error_information is not None:
            return f"{base}\n  {self.error_information}"
        return base


def make_requests(item_names: Iterable[str]) -> List[ItemRequest]:
    """
    Create item requests using each item name as its own client handle.

    Args:
        item_names: Item names to request

    Returns:
        List of item requests, in the order of the names
    """
    return [ItemRequest(name, name) for name in item_names]
