import asyncio
import datetime
import itertools

import pytest

from conftest import SERVER_URL, shutdown, wait_until
from opc_poller.connection import Connection
from opc_poller.events import SubscriptionState
from opc_poller.items import ItemRequest, ItemValue, State
from opc_poller.service import (
    PollRefreshReply,
    RawItemValue,
    RefreshItemList,
    ServiceError,
    SubscribeReply,
)

INACTIVE = SubscriptionState.INACTIVE
WAITING = SubscriptionState.WAITING
ACTIVE = SubscriptionState.ACTIVE

T0 = datetime.datetime(2026, 3, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def transitions(states):
    """Collapse repeated states into one."""
    return [state for state, _ in itertools.groupby(states)]


def test_end_to_end_scenario(service, listener):
    async def scenario():
        service.subscribe_steps.append(SubscribeReply(
            "S1", items=[RawItemValue("h1", value=21.5, quality="good", timestamp=T0)]
        ))
        service.refresh_steps.append(PollRefreshReply(invalid_server_sub_handles=["S1"]))

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items([ItemRequest("h1", "Temp.Value")])

        # after the invalidation the poller immediately subscribes again
        await wait_until(lambda: service.count("subscribe") == 2)
        await connection.events.join()

        assert transitions(listener.states) == [INACTIVE, ACTIVE, INACTIVE]
        assert listener.data == [{
            "h1": ItemValue("Temp.Value", None, 21.5, State.GOOD, T0),
        }]
        assert poller.subscription_handle is None

        subscribe = service.calls[0][1]
        assert [(i.client_item_handle, i.item_name) for i in subscribe.items] == [("h1", "Temp.Value")]
        assert subscribe.subscription_ping_rate == 4000
        assert subscribe.options.return_error_text
        assert subscribe.options.return_diagnostic_info
        assert subscribe.options.return_item_time

        refresh = service.calls[1][1]
        assert refresh.server_sub_handles == ["S1"]
        assert refresh.wait_time == 1000

        poller.set_items([])
        service.release()

        await wait_until(lambda: poller.state == WAITING)
        await connection.events.join()
        assert listener.states[-1] == WAITING

        calls = len(service.calls)
        await asyncio.sleep(0.1)
        assert len(service.calls) == calls
        assert len(listener.data) == 1

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_setup_with_empty_items_does_not_subscribe(service, listener):
    async def scenario():
        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)

        await wait_until(lambda: poller.state == WAITING)
        await poller.setup()

        assert service.count("subscribe") == 0
        assert poller.subscription_handle is None

        await connection.events.join()
        assert listener.states == [INACTIVE, WAITING]

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_set_items_wakes_waiting_poller(service, listener):
    async def scenario():
        service.subscribe_steps.append(SubscribeReply("S1"))

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=500)
        await wait_until(lambda: poller.state == WAITING)

        poller.set_items(["Temp.Value"])

        await wait_until(lambda: service.count("poll_refresh") == 1)
        await connection.events.join()
        assert listener.states == [INACTIVE, WAITING, INACTIVE, ACTIVE]
        assert poller.subscription_handle == "S1"

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_set_items_during_poll_discards_reply(service, listener):
    async def scenario():
        gate = asyncio.Event()

        async def slow_refresh(request):
            await gate.wait()
            return PollRefreshReply(item_lists=[
                RefreshItemList("S1", [RawItemValue("h1", value=1.0, quality="good")]),
            ])

        service.subscribe_steps.extend([SubscribeReply("S1"), SubscribeReply("S2")])
        service.refresh_steps.append(slow_refresh)

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items([ItemRequest("h1", "Temp.Value")])
        await wait_until(lambda: service.count("poll_refresh") == 1)

        poller.set_items([ItemRequest("a", "A.Value"), ItemRequest("b", "B.Value")])
        assert set(poller.handle_map) == {"a", "b"}
        assert poller.subscription_handle is None

        gate.set()
        await wait_until(lambda: service.count("poll_refresh") == 2)
        await connection.events.join()

        assert listener.data == []
        assert poller.subscription_handle == "S2"
        second = [call for name, call in service.calls if name == "subscribe"][1]
        assert [i.client_item_handle for i in second.items] == ["a", "b"]

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_set_items_cancels_replaced_subscription(service, listener):
    async def scenario():
        gate = asyncio.Event()

        async def slow_refresh(request):
            await gate.wait()
            return PollRefreshReply()

        service.subscribe_steps.extend([SubscribeReply("S1"), SubscribeReply("S2")])
        service.refresh_steps.append(slow_refresh)

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items(["A"])
        await wait_until(lambda: service.count("poll_refresh") == 1)

        poller.set_items(["B"])
        gate.set()

        await wait_until(lambda: service.count("poll_refresh") == 2)
        assert service.names() == ["subscribe", "poll_refresh", "cancel", "subscribe", "poll_refresh"]
        assert service.calls[2] == ("cancel", "S1")
        assert poller.subscription_handle == "S2"

        await shutdown(connection, service, poller)
        assert service.count("cancel") == 2
        assert service.calls[-1] == ("cancel", "S2")

    asyncio.run(scenario())


def test_dispose_cancels_replaced_subscription(service, listener):
    async def scenario():
        gate = asyncio.Event()

        async def slow_refresh(request):
            await gate.wait()
            return PollRefreshReply()

        service.subscribe_steps.append(SubscribeReply("S1"))
        service.refresh_steps.append(slow_refresh)

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items(["A"])
        await wait_until(lambda: service.count("poll_refresh") == 1)

        poller.set_items(["B"])
        await poller.dispose()
        assert service.calls[-1] == ("cancel", "S1")

        gate.set()
        await asyncio.wait_for(poller.wait_closed(), 1.0)
        assert service.count("cancel") == 1
        assert service.count("subscribe") == 1

        await shutdown(connection, service)

    asyncio.run(scenario())


def test_set_items_during_setup_cancels_new_subscription(service, listener):
    async def scenario():
        gate = asyncio.Event()

        async def slow_subscribe(request):
            await gate.wait()
            return SubscribeReply("S1")

        service.subscribe_steps.extend([slow_subscribe, SubscribeReply("S2")])

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items(["A"])
        await wait_until(lambda: service.count("subscribe") == 1)

        poller.set_items(["B"])
        gate.set()

        await wait_until(lambda: service.count("poll_refresh") == 1)
        assert ("cancel", "S1") in service.calls
        assert poller.subscription_handle == "S2"

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_invalid_handle_demotes_to_inactive(service, listener):
    async def scenario():
        service.subscribe_steps.append(SubscribeReply("S1"))
        service.refresh_steps.append(PollRefreshReply(
            invalid_server_sub_handles=["S1"],
            item_lists=[RefreshItemList("S1", [RawItemValue("h1", value=3)])],
        ))

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items([ItemRequest("h1", "Temp.Value")])

        await wait_until(lambda: service.count("subscribe") == 2)
        await connection.events.join()

        assert poller.subscription_handle is None
        after_active = listener.states[listener.states.index(ACTIVE) + 1:]
        assert after_active[0] == INACTIVE
        assert listener.data == []

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_refresh_values_are_delivered(service, listener):
    async def scenario():
        service.subscribe_steps.append(SubscribeReply("S1"))
        service.refresh_steps.extend([
            PollRefreshReply(),
            PollRefreshReply(item_lists=[
                RefreshItemList("S1", [RawItemValue("h1", value=1, quality="good", timestamp=T0)]),
                RefreshItemList("S1", [RawItemValue("h1", value=2, quality="badCommFailure", timestamp=T0)]),
            ]),
        ])

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items([ItemRequest("h1", "Temp.Value")])

        await wait_until(lambda: service.count("poll_refresh") == 3)
        await connection.events.join()

        # empty refreshes are not reported
        assert len(listener.data) == 1
        value = listener.data[0]["h1"]
        assert value.value == 2
        assert value.state == State.BAD

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_failures_are_retried(service, listener):
    async def scenario():
        service.subscribe_steps.extend([ServiceError("server down"), SubscribeReply("S1")])
        service.refresh_steps.append(ConnectionResetError("reset"))
        service.subscribe_steps.append(SubscribeReply("S2"))

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items(["Temp.Value"])

        await wait_until(lambda: service.count("poll_refresh") == 2)
        await connection.events.join()

        # the subscription of the failed refresh is cancelled before the next setup
        assert service.names() == [
            "subscribe", "subscribe", "poll_refresh", "cancel", "subscribe", "poll_refresh",
        ]
        assert service.calls[3] == ("cancel", "S1")
        assert transitions(listener.states) == [INACTIVE, ACTIVE, INACTIVE, ACTIVE]
        assert poller.subscription_handle == "S2"

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_retry_delay_pauses_after_failure(service, listener):
    async def scenario():
        service.subscribe_steps.extend([ServiceError("server down"), SubscribeReply("S1")])

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000, retry_delay=0.3)
        loop = asyncio.get_running_loop()
        started = loop.time()
        poller.set_items(["Temp.Value"])

        await wait_until(lambda: service.count("subscribe") == 2)
        assert loop.time() - started >= 0.25

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_unknown_client_handle_in_reply_fails_poll(service, listener):
    async def scenario():
        service.subscribe_steps.extend([SubscribeReply("S1"), SubscribeReply("S2")])
        service.refresh_steps.append(PollRefreshReply(item_lists=[
            RefreshItemList("S1", [RawItemValue("unknown", value=1)]),
        ]))

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items(["Temp.Value"])

        await wait_until(lambda: service.count("poll_refresh") == 2)
        await connection.events.join()

        assert listener.data == []
        assert transitions(listener.states) == [INACTIVE, ACTIVE, INACTIVE, ACTIVE]

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_dispose_twice_cancels_once(service, listener):
    async def scenario():
        service.subscribe_steps.append(SubscribeReply("S1"))

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items(["Temp.Value"])
        await wait_until(lambda: service.count("poll_refresh") == 1)

        await poller.dispose()
        await poller.dispose()

        assert service.count("cancel") == 1
        assert ("cancel", "S1") in service.calls
        assert poller.subscription_handle is None
        assert not poller.running

        await connection.events.join()
        states = list(listener.states)

        service.release()
        await asyncio.wait_for(poller.wait_closed(), 1.0)
        await connection.events.join()
        assert listener.states == states

        await connection.close()

    asyncio.run(scenario())


def test_dispose_survives_cancel_failure(service, listener):
    async def scenario():
        service.subscribe_steps.append(SubscribeReply("S1"))
        service.cancel_error = ServiceError("cancel failed")

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        poller.set_items(["Temp.Value"])
        await wait_until(lambda: service.count("poll_refresh") == 1)

        await poller.dispose()
        assert service.count("cancel") == 1
        assert poller.subscription_handle is None

        await shutdown(connection, service)

    asyncio.run(scenario())


def test_dispose_without_subscription_does_not_cancel(service, listener):
    async def scenario():
        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)
        await wait_until(lambda: poller.state == WAITING)

        await poller.dispose()
        await asyncio.wait_for(poller.wait_closed(), 1.0)

        assert service.count("cancel") == 0
        await connection.close()

    asyncio.run(scenario())


def test_duplicate_handles_shadow_earlier_items(service, listener):
    async def scenario():
        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)

        poller.set_items([ItemRequest("h", "First.Value"), ItemRequest("h", "Second.Value")])

        assert len(poller.items) == 2
        assert list(poller.handle_map) == ["h"]
        assert poller.handle_map["h"].item_name == "Second.Value"

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_set_items_accepts_names(service, listener):
    async def scenario():
        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(listener, wait_time=1000)

        poller.set_items(["A.Value", "B.Value"])

        assert poller.items == [ItemRequest("A.Value", "A.Value"), ItemRequest("B.Value", "B.Value")]
        assert set(poller.handle_map) == {"A.Value", "B.Value"}

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_start_is_idempotent_and_names_are_unique(service):
    async def scenario():
        connection = Connection(SERVER_URL, service=service)
        first = connection.create_subscription_poller(None, wait_time=1000)
        second = connection.create_subscription_poller(None, wait_time=1000)

        task = first.task
        first.start()
        assert first.task is task

        assert first.name != second.name
        assert first.name.startswith(f"SubscriptionPoller/{SERVER_URL}/")
        assert task.get_name().startswith(first.name + "/")

        await shutdown(connection, service, first, second)

    asyncio.run(scenario())


def test_poller_without_listener(service):
    async def scenario():
        service.subscribe_steps.append(SubscribeReply("S1", items=[RawItemValue("h1", value=1)]))

        connection = Connection(SERVER_URL, service=service)
        poller = connection.create_subscription_poller(None, wait_time=1000)
        poller.set_items([ItemRequest("h1", "Temp.Value")])

        await wait_until(lambda: service.count("poll_refresh") == 1)
        assert poller.state == ACTIVE

        await shutdown(connection, service, poller)

    asyncio.run(scenario())


def test_invalid_wait_time_is_rejected(service):
    async def scenario():
        connection = Connection(SERVER_URL, service=service)
        with pytest.raises(ValueError):
            connection.create_subscription_poller(None, wait_time=0)
        await connection.close()

    asyncio.run(scenario())
