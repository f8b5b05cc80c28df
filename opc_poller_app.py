#!/usr/bin/env python3
"""
OPC poller application

Connects to a server, acquires the given items with a subscription poller
(or a read poller) and prints state changes and values until interrupted.
"""

import argparse
import asyncio
import datetime
import logging
import sys
from typing import Dict, List, Optional

from opc_poller import Connection, ItemValue, SubscriptionListener, SubscriptionState
from opc_poller import utils

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "opc.tcp://localhost:4840/freeopcua/server/"


class PrintingListener(SubscriptionListener):
    """Prints every state change and value to the console."""

    def __init__(self, out=sys.stdout):
        self.out = out
        self.changes = 0

    def state_change(self, state: SubscriptionState) -> None:
        current_time = datetime.datetime.now().strftime("%H:%M:%S")
        print(f"[{current_time}] state: {state.name}", file=self.out)

    def data_change(self, values: Dict[str, ItemValue]) -> None:
        current_time = datetime.datetime.now().strftime("%H:%M:%S")
        for handle, value in sorted(values.items()):
            self.changes += 1
            line = f"[{current_time}] {handle} = {utils.safe_repr(value.value)} ({value.state.name})"
            if value.error_information is not None:
                line += f" {value.error_information}"
            print(line, file=self.out)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Acquire OPC items by long-poll subscription or periodic reads")
    parser.add_argument("items", nargs="+", help="item names (OPC UA node ids, e.g. ns=2;s=Temp.Value)")
    parser.add_argument("--url", default=DEFAULT_SERVER_URL, help=f"server URL (default: {DEFAULT_SERVER_URL})")
    parser.add_argument("--wait-time", type=int, default=None, help="long-poll wait time in ms")
    parser.add_argument("--sampling-rate", type=int, default=100, help="requested sampling rate in ms")
    parser.add_argument("--read-period", type=int, default=None,
                        help="use periodic reads with this period in ms instead of a subscription")
    parser.add_argument("--duration", type=float, default=None, help="stop after this many seconds")
    parser.add_argument("--verbose", "-v", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    listener = PrintingListener()

    try:
        connection = Connection(args.url)
    except ValueError as e:
        print(f"Invalid connection parameters: {e}", file=sys.stderr)
        return 2

    async with connection:
        if args.read_period:
            poller = connection.create_read_poller(listener, args.read_period)
        else:
            poller = connection.create_subscription_poller(listener, args.wait_time, args.sampling_rate)
        print(f"Started {poller}")

        poller.set_items(args.items)

        try:
            if args.duration:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        finally:
            print(f"\nReceived {listener.changes} values")

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    utils.setup_logging(logging.DEBUG if args.verbose else logging.WARNING, log_file=None)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nApplication terminated by user.")
        return 0
    except Exception as e:
        logger.error(f"Unhandled exception: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
