"""
OPC poller Python package.
"""

from opc_poller.connection import Connection
from opc_poller.events import SubscriptionListener, SubscriptionState
from opc_poller.items import ErrorInformation, ItemRequest, ItemValue, State, make_requests
from opc_poller.poller import SubscriptionPoller
from opc_poller.read_poller import ReadPoller
from opc_poller.service import ServiceError, SubscriptionService
from opc_poller.utils import setup_logging

__version__ = "0.1.0"
__all__ = [
    "Connection",
    "ErrorInformation",
    "ItemRequest",
    "ItemValue",
    "ReadPoller",
    "ServiceError",
    "State",
    "SubscriptionListener",
    "SubscriptionPoller",
    "SubscriptionService",
    "SubscriptionState",
    "make_requests",
    "setup_logging",
]
