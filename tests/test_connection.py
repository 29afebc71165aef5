import asyncio

import pytest

from chatsync.connection import ConnectionManager, generate_username, validate_username
from chatsync.errors import ConnectionTimeout, InvalidUsernameError, UsernameLockedError
from chatsync.schemas import ChatEvent, ConnectionState, EventKind

from conftest import FakeTransport


def test_generated_username_uses_clock_suffix(clock):
    assert generate_username(clock) == f"User_{str(clock.now)[-6:]}"


@pytest.mark.parametrize("name", ["ab", "x" * 21, "bad$name", "   ", ""])
def test_invalid_usernames_rejected(name, fast_settings):
    with pytest.raises(InvalidUsernameError):
        validate_username(name, fast_settings)


def test_username_is_trimmed(fast_settings):
    assert validate_username("  José_Luis-2 ", fast_settings) == "José_Luis-2"


async def test_connect_requires_confirmed_username(session, transport):
    alerts = []
    session.connection.add_alert_listener(alerts.append)

    assert await session.connect() is False
    assert session.state is ConnectionState.DISCONNECTED
    assert transport.calls == []
    assert alerts == ["Set a username before connecting"]


async def test_connect_subscribes_and_announces(session, transport, fast_settings):
    session.set_username("alice")
    assert await session.connect() is True

    assert session.state is ConnectionState.CONNECTED
    assert set(transport.handlers) == {
        fast_settings.MESSAGE_BROADCAST_CHANNEL,
        fast_settings.TYPING_BROADCAST_CHANNEL,
    }
    channel, event = transport.published[-1]
    assert channel == fast_settings.MESSAGE_COMMAND_CHANNEL
    assert event["type"] == "USER_JOINED"
    assert event["sender"] == "alice"
    assert not session.connection.connect_timer_armed
    await session.close()


async def test_username_locked_while_connected(connected):
    with pytest.raises(UsernameLockedError):
        connected.set_username("bob")


async def test_connect_timeout_sets_error_once(fast_settings, clock):
    transport = FakeTransport(auto_ack=False)
    manager = ConnectionManager(transport, fast_settings, clock)
    manager.set_username("alice")
    transitions = []
    manager.add_state_listener(lambda old, new: transitions.append(new))

    await manager.connect()
    assert manager.state is ConnectionState.CONNECTING
    assert manager.connect_timer_armed

    await asyncio.sleep(0.15)

    assert manager.state is ConnectionState.ERROR
    assert transitions.count(ConnectionState.ERROR) == 1
    assert isinstance(manager.last_error, ConnectionTimeout)
    assert not manager.connect_timer_armed
    assert transport.calls[-1] == "deactivate"


async def test_retry_after_timeout(fast_settings, clock):
    transport = FakeTransport(auto_ack=False)
    manager = ConnectionManager(transport, fast_settings, clock)
    manager.set_username("alice")
    await manager.connect()
    await asyncio.sleep(0.15)
    assert manager.state is ConnectionState.ERROR

    transport.auto_ack = True
    assert await manager.connect() is True
    assert manager.state is ConnectionState.CONNECTED
    assert manager.last_error is None
    await manager.close()


async def test_late_acknowledgment_is_ignored(fast_settings, clock):
    transport = FakeTransport(auto_ack=False)
    manager = ConnectionManager(transport, fast_settings, clock)
    manager.set_username("alice")
    await manager.connect()
    await asyncio.sleep(0.15)

    await transport.ack()
    assert manager.state is ConnectionState.ERROR
    assert transport.published == []


async def test_disconnect_while_connecting_cancels_timer(fast_settings, clock):
    transport = FakeTransport(auto_ack=False)
    manager = ConnectionManager(transport, fast_settings, clock)
    manager.set_username("alice")
    await manager.connect()

    await manager.disconnect()
    assert manager.state is ConnectionState.DISCONNECTED
    assert not manager.connect_timer_armed
    assert transport.published == []

    await asyncio.sleep(0.1)
    assert manager.state is ConnectionState.DISCONNECTED


async def test_transport_error_moves_to_error(connected, transport):
    alerts = []
    connected.connection.add_alert_listener(alerts.append)

    await transport.fail("socket reset")

    assert connected.state is ConnectionState.ERROR
    assert connected.connection.last_error.cause == "socket reset"
    assert alerts == ["Connection failed: socket reset"]


async def test_disconnect_publishes_farewell_then_deactivates(connected, transport, fast_settings):
    await connected.disconnect()

    assert transport.kinds()[-1] == "USER_LEFT"
    assert transport.calls[-2:] == [f"publish:{fast_settings.MESSAGE_COMMAND_CHANNEL}", "deactivate"]
    assert connected.state is ConnectionState.DISCONNECTED


async def test_disconnect_survives_publish_failure(connected, transport):
    transport.fail_publish = True

    await connected.disconnect()

    assert connected.state is ConnectionState.DISCONNECTED
    assert transport.calls[-1] == "deactivate"


async def test_transport_drop_disconnects(connected, transport):
    await transport.drop()
    assert connected.state is ConnectionState.DISCONNECTED


async def test_publish_when_disconnected_is_dropped(session, transport, fast_settings):
    event = ChatEvent(sender="alice", text="hi", type=EventKind.MESSAGE)
    assert await session.connection.publish(fast_settings.MESSAGE_COMMAND_CHANNEL, event) is False
    assert transport.published == []


async def test_publish_failure_is_not_raised(connected, transport, fast_settings):
    transport.fail_publish = True
    event = ChatEvent(sender="alice", text="hi", type=EventKind.MESSAGE)
    assert await connected.connection.publish(fast_settings.MESSAGE_COMMAND_CHANNEL, event) is False


async def test_events_dropped_after_disconnect(connected, transport, fast_settings):
    handler = transport.handlers[fast_settings.MESSAGE_BROADCAST_CHANNEL]
    await connected.disconnect()

    handler('{"sender": "bob", "text": "late", "type": "MESSAGE"}')
    assert len(connected.stream) == 0
