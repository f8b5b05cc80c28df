"""
Utility module for the OPC poller.

This module provides logging setup and value conversion helpers.
"""

import datetime
import logging
from typing import Any, Optional

from asyncua import ua

logger = logging.getLogger(__name__)

LOG_FILE = "opc_poller.log"
MAX_MESSAGE_LENGTH = 500

_BINARY_CHARS = frozenset(chr(c) for c in list(range(0x00, 0x09)) + [0x0b, 0x0c] + list(range(0x0e, 0x20)) + [0x7f])


def variant_to_python(variant: ua.Variant) -> Any:
    """
    Convert an OPC UA Variant to a Python type.

    Args:
        variant: The OPC UA Variant to convert

    Returns:
        Python representation of the variant
    """
    if variant.is_array:
        return [variant_to_python(ua.Variant(v)) for v in variant.Value]

    value = variant.Value

    if isinstance(value, ua.LocalizedText):
        return value.Text
    if isinstance(value, ua.QualifiedName):
        return value.Name
    if isinstance(value, ua.NodeId):
        return value.to_string()
    if isinstance(value, ua.ExtensionObject):
        return "ExtensionObject"

    return value


def to_utc(timestamp: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """
    Make a timestamp timezone aware.

    Naive timestamps are taken to be UTC, which is what OPC servers send.
    """
    if timestamp is None:
        return None
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=datetime.timezone.utc)
    return timestamp


def format_timestamp(timestamp: Optional[datetime.datetime]) -> str:
    """Format a timestamp in local time for display."""
    if timestamp is None:
        return "-"
    return to_utc(timestamp).astimezone().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def is_binary_data(data: Any) -> bool:
    """
    Check if the data is likely binary data.

    Args:
        data: Data to check

    Returns:
        True if the data is likely binary
    """
    if data is None:
        return False

    if isinstance(data, (bytes, bytearray)):
        return True

    if isinstance(data, str):
        return any(c in _BINARY_CHARS for c in data)

    return False


def safe_repr(obj: Any, limit: int = 100) -> str:
    """
    Create a short string representation of an object for logging.

    Args:
        obj: The object to represent
        limit: Maximum length before the representation is shortened

    Returns:
        Safe string representation
    """
    if obj is None:
        return "None"

    if isinstance(obj, (int, float, bool)):
        return str(obj)

    if isinstance(obj, (list, tuple)):
        return f"[{type(obj).__name__} with {len(obj)} items]"

    if isinstance(obj, dict):
        return f"[Dictionary with {len(obj)} items]"

    try:
        s = str(obj)
    except Exception:
        return f"[{type(obj).__name__} object]"
    if is_binary_data(s) or len(s) > limit:
        return f"[{type(obj).__name__} object]"
    return s


class BinaryFilter(logging.Filter):
    """Shortens log records carrying binary or oversized messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg is None:
            return True

        try:
            msg_str = record.getMessage()
        except Exception:
            msg_str = str(record.msg)

        if is_binary_data(msg_str) or len(msg_str) > MAX_MESSAGE_LENGTH:
            record.msg = f"{msg_str[:50]}... [binary data filtered]"
            record.args = None
        return True


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = LOG_FILE) -> None:
    """
    Set up basic logging configuration.

    Args:
        level: The logging level to use
        log_file: File to log to as well as the console, None to disable
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 기존 핸들러 모두 제거
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(BinaryFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            file_handler.addFilter(BinaryFilter())
            root_logger.addHandler(file_handler)
        except OSError:
            logging.warning("Could not create log file, logging to console only.")

    # asyncua 내부 로그는 경고 이상만 출력
    logging.getLogger('asyncua.client.ua_client').setLevel(logging.WARNING)
    logging.getLogger('asyncua.client.client').setLevel(logging.WARNING)
    logging.getLogger('asyncua.common.subscription').setLevel(logging.WARNING)
    logging.getLogger('asyncua.uaprotocol').setLevel(logging.WARNING)
    logging.getLogger('asyncua.crypto').setLevel(logging.ERROR)

    logger.debug("Logging configured")
