"""
Reply translation for the OPC poller.

Turns raw service replies into ItemValue mappings keyed by client handle.
"""

import logging
from typing import Dict, Iterable, Mapping, Optional

from opc_poller.items import ErrorInformation, ItemRequest, ItemValue, State
from opc_poller.service import OpcError, PollRefreshReply, RawItemValue, ReadReply, SubscribeReply
from opc_poller.utils import to_utc

logger = logging.getLogger(__name__)


def map_errors(errors: Optional[Iterable[OpcError]]) -> Dict[str, Optional[str]]:
    """
    Build a lookup from error id to error text.

    Args:
        errors: Error definitions of a reply, may be None

    Returns:
        Dictionary of error id to text
    """
    if not errors:
        return {}
    return {error.id: error.text for error in errors}


def convert_quality(quality: Optional[str], result_id: Optional[str] = None) -> State:
    """
    Map a raw quality string to a State.

    Quality strings are matched by prefix, so "goodLocalOverride" is GOOD and
    "badNotConnected" is BAD. Unknown strings are treated as UNCERTAIN.
    """
    if not quality:
        return State.BAD if result_id else State.GOOD

    q = quality.lower()
    if q.startswith("good"):
        return State.GOOD
    if q.startswith("bad"):
        return State.BAD
    return State.UNCERTAIN


def convert_value(raw: RawItemValue, item_name: str, error_map: Mapping[str, Optional[str]]) -> ItemValue:
    """
    Convert one raw item value.

    Args:
        raw: The raw item value from the reply
        item_name: Name of the item as it was requested
        error_map: Error id to text lookup of the reply

    Returns:
        The converted item value
    """
    error_information = None
    if raw.result_id:
        error_information = ErrorInformation(raw.result_id, error_map.get(raw.result_id))

    return ItemValue(
        item_name=item_name,
        item_path=raw.item_path,
        value=raw.value,
        state=convert_quality(raw.quality, raw.result_id),
        timestamp=to_utc(raw.timestamp),
        error_information=error_information,
    )


def _add_values(values: Dict[str, ItemValue], items: Iterable[RawItemValue],
                handle_map: Mapping[str, ItemRequest], error_map: Mapping[str, Optional[str]]) -> None:
    for raw in items:
        # a handle we never requested is a server fault and fails the whole reply
        request = handle_map[raw.client_item_handle]
        values[raw.client_item_handle] = convert_value(raw, request.item_name, error_map)


def values_from_subscribe(reply: SubscribeReply, handle_map: Mapping[str, ItemRequest]) -> Dict[str, ItemValue]:
    """
    Translate the initial values of a subscribe reply.

    Args:
        reply: The subscribe reply
        handle_map: Client handle to item request lookup

    Returns:
        Dictionary of client handle to item value
    """
    values: Dict[str, ItemValue] = {}
    _add_values(values, reply.items, handle_map, map_errors(reply.errors))
    return values


def values_from_refresh(reply: PollRefreshReply, handle_map: Mapping[str, ItemRequest]) -> Dict[str, ItemValue]:
    """
    Translate a poll refresh reply.

    All item lists of the reply are merged; on a client handle collision the
    value of the later list wins.

    Args:
        reply: The poll refresh reply
        handle_map: Client handle to item request lookup

    Returns:
        Dictionary of client handle to item value
    """
    values: Dict[str, ItemValue] = {}
    error_map = map_errors(reply.errors)

    for item_list in reply.item_lists:
        logger.debug(f"{len(item_list.items)} items in reply")
        _add_values(values, item_list.items, handle_map, error_map)

    return values


def values_from_read(reply: ReadReply, handle_map: Mapping[str, ItemRequest]) -> Dict[str, ItemValue]:
    """Translate a read reply."""
    values: Dict[str, ItemValue] = {}
    _add_values(values, reply.items, handle_map, map_errors(reply.errors))
    return values
