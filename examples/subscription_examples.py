"""
Examples for subscription and read pollers.

Starts a small OPC UA server in-process, changes a value every second and
acquires it with both poller types.
"""

import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from asyncua import Server

from opc_poller import Connection, ItemRequest, SubscriptionListener
from opc_poller.utils import setup_logging

SERVER_URL = "opc.tcp://127.0.0.1:48400/opc_poller/example/"
NAMESPACE_URI = "urn:opc_poller:example"


class ExampleListener(SubscriptionListener):

    def __init__(self, label):
        self.label = label

    def state_change(self, state):
        print(f"{self.label}: state {state.name}")

    async def data_change(self, values):
        for handle, value in values.items():
            print(f"{self.label}: {handle} -> {value}")


async def start_server():
    server = Server()
    await server.init()
    server.set_endpoint(SERVER_URL)
    idx = await server.register_namespace(NAMESPACE_URI)

    plant = await server.nodes.objects.add_object(idx, "Plant")
    temperature = await plant.add_variable(f"ns={idx};s=Temp.Value", "Temp", 21.5)
    pressure = await plant.add_variable(f"ns={idx};s=Pressure.Value", "Pressure", 1.0)
    await server.start()
    return server, idx, temperature, pressure


async def change_values(temperature, pressure):
    value = 21.5
    while True:
        await asyncio.sleep(1.0)
        value += 0.5
        await temperature.write_value(value)
        await pressure.write_value(value / 20.0)


async def example_subscription_poller(idx):
    """Example showing a subscription poller with explicit client handles."""
    async with Connection(SERVER_URL) as connection:
        poller = connection.create_subscription_poller(ExampleListener("subscription"), wait_time=2000)
        poller.set_items([
            ItemRequest("temp", f"ns={idx};s=Temp.Value"),
            ItemRequest("pressure", f"ns={idx};s=Pressure.Value"),
            ItemRequest("missing", f"ns={idx};s=DoesNotExist"),
        ])
        await asyncio.sleep(5)

        # 아이템을 비우면 폴러는 WAITING 상태로 대기
        poller.set_items([])
        await asyncio.sleep(1)


async def example_read_poller(idx):
    """Example showing a read poller using item names as handles."""
    async with Connection(SERVER_URL) as connection:
        poller = connection.create_read_poller(ExampleListener("read"), period=1000, max_age=0)
        poller.set_items([f"ns={idx};s=Temp.Value"])
        await asyncio.sleep(4)


async def run_examples():
    server, idx, temperature, pressure = await start_server()
    changer = asyncio.create_task(change_values(temperature, pressure))
    try:
        print("\n=== Subscription poller ===")
        await example_subscription_poller(idx)
        print("\n=== Read poller ===")
        await example_read_poller(idx)
    finally:
        changer.cancel()
        await server.stop()


if __name__ == "__main__":
    setup_logging(logging.WARNING, log_file=None)
    asyncio.run(run_examples())
