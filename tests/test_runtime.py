import asyncio
import contextlib
import logging

import orjson
import pytest
import pytest_asyncio
import websockets
from websockets.asyncio.client import connect

from chatrelay.config import RelayConfig
from chatrelay.core.proto import EVENT_CONNECT, EVENT_ERROR, EVENT_MESSAGE, EVENT_SENT
from chatrelay.server.runtime import CLOSE_TOO_MANY, CLOSE_UNAUTHORIZED, RelayServer


# -----------------------------
# Utilities / fixtures
# -----------------------------

async def _wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def _recv_event(ws, timeout=2.0):
    frame = orjson.loads(await asyncio.wait_for(ws.recv(), timeout))
    return frame["event"], frame["data"]


async def _send_event(ws, event, data):
    await ws.send(orjson.dumps({"event": event, "data": data}).decode())


@pytest_asyncio.fixture
async def make_server(store_path, secret):
    servers = []

    async def _make(**overrides):
        cfg = RelayConfig(
            host="127.0.0.1",
            port=0,
            jwt_secret=secret,
            store_path=store_path,
            handshake_timeout_seconds=0.5,
            **overrides,
        )
        server = RelayServer(cfg)
        await server.start()
        servers.append(server)
        return server

    yield _make
    for server in servers:
        await server.stop()


@pytest_asyncio.fixture
async def server(make_server):
    return await make_server()


@contextlib.asynccontextmanager
async def client(server, token):
    async with connect(f"ws://127.0.0.1:{server.port}") as ws:
        await ws.send(orjson.dumps({"token": token}).decode())
        yield ws


# -----------------------------
# Handshake
# -----------------------------

@pytest.mark.asyncio
async def test_valid_token_connects_and_registers(server, make_token):
    async with client(server, make_token("u1")) as ws:
        assert await _recv_event(ws) == (EVENT_CONNECT, {"id": "u1"})
        assert server.registry.count("u1") == 1
    await _wait_until(lambda: "u1" not in server.registry)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "first_frame, reason",
    [
        ({}, "No token"),
        ({"token": ""}, "No token"),
        ({"token": "not.a.jwt"}, "Invalid token"),
    ],
)
async def test_bad_handshake_closes_without_registering(server, first_frame, reason):
    async with connect(f"ws://127.0.0.1:{server.port}") as ws:
        await ws.send(orjson.dumps(first_frame).decode())
        with pytest.raises(websockets.ConnectionClosed) as exc:
            await ws.recv()
    assert exc.value.rcvd.code == CLOSE_UNAUTHORIZED
    assert exc.value.rcvd.reason == reason
    assert len(server.registry) == 0


@pytest.mark.asyncio
async def test_expired_token_never_becomes_active(server, make_token):
    async with client(server, make_token("u1", ttl=-60)) as ws:
        with pytest.raises(websockets.ConnectionClosed) as exc:
            await ws.recv()
    assert exc.value.rcvd.reason == "Invalid token"
    assert "u1" not in server.registry


@pytest.mark.asyncio
async def test_handshake_timeout_is_treated_as_missing_token(server):
    async with connect(f"ws://127.0.0.1:{server.port}") as ws:
        with pytest.raises(websockets.ConnectionClosed) as exc:
            await ws.recv()
    assert exc.value.rcvd.code == CLOSE_UNAUTHORIZED
    assert exc.value.rcvd.reason == "No token"


@pytest.mark.asyncio
async def test_connection_limit_per_identity(make_server, make_token):
    srv = await make_server(max_connections_per_identity=1)
    async with client(srv, make_token("u1")) as first:
        await _recv_event(first)
        async with client(srv, make_token("u1")) as second:
            with pytest.raises(websockets.ConnectionClosed) as exc:
                await second.recv()
        assert exc.value.rcvd.code == CLOSE_TOO_MANY
        assert srv.registry.count("u1") == 1


# -----------------------------
# Routing end to end
# -----------------------------

@pytest.mark.asyncio
async def test_direct_message_to_two_recipient_connections(server, make_token):
    async with client(server, make_token("u1")) as alice, \
            client(server, make_token("u2")) as bob_phone, \
            client(server, make_token("u2")) as bob_laptop:
        for ws in (alice, bob_phone, bob_laptop):
            await _recv_event(ws)

        await _send_event(alice, EVENT_MESSAGE, {"to": "u2", "content": "hi", "tempId": "abc"})

        event, ack = await _recv_event(alice)
        assert event == EVENT_SENT
        assert ack["tempId"] == "abc"

        got_phone = await _recv_event(bob_phone)
        got_laptop = await _recv_event(bob_laptop)
        assert got_phone == got_laptop
        assert got_phone[0] == EVENT_MESSAGE
        message = got_phone[1]
        assert message["id"] == ack["serverId"]
        assert message["ts"] == ack["ts"]
        assert (message["from"], message["to"], message["content"]) == ("u1", "u2", "hi")

    stored = [m.to_record() for m in await server.store.load()]
    assert stored == [message]


@pytest.mark.asyncio
async def test_invalid_payload_is_silently_dropped(server, make_token):
    async with client(server, make_token("u1")) as ws:
        await _recv_event(ws)
        await _send_event(ws, EVENT_MESSAGE, {"to": "u2"})
        await ws.send("not json")
        await _send_event(ws, "typing", {"to": "u2"})
        await _send_event(ws, EVENT_MESSAGE, {"to": "u2", "content": "after", "tempId": 2})

        # the only reply is the ack for the valid message
        event, ack = await _recv_event(ws)
        assert (event, ack["tempId"]) == (EVENT_SENT, 2)

    assert [m.content for m in await server.store.load()] == ["after"]


@pytest.mark.asyncio
async def test_invalid_payload_reported_when_enabled(make_server, make_token):
    srv = await make_server(report_invalid_payloads=True)
    async with client(srv, make_token("u1")) as ws:
        await _recv_event(ws)
        await _send_event(ws, EVENT_MESSAGE, {"to": "u2", "tempId": "t1"})
        assert await _recv_event(ws) == (EVENT_ERROR, {"tempId": "t1", "reason": "invalid_payload"})


@pytest.mark.asyncio
async def test_disconnect_unregisters_only_that_connection(server, make_token):
    async with client(server, make_token("u2")) as keep:
        await _recv_event(keep)
        async with client(server, make_token("u2")) as leave:
            await _recv_event(leave)
            assert server.registry.count("u2") == 2
        await _wait_until(lambda: server.registry.count("u2") == 1)

        async with client(server, make_token("u1")) as sender:
            await _recv_event(sender)
            await _send_event(sender, EVENT_MESSAGE, {"to": "u2", "content": "still here"})
            event, data = await _recv_event(keep)
            assert (event, data["content"]) == (EVENT_MESSAGE, "still here")


@pytest.mark.asyncio
async def test_start_creates_store_file(server, store_path):
    assert store_path.exists()
    assert orjson.loads(store_path.read_bytes()) == []


@pytest.mark.asyncio
async def test_connect_log_includes_token_expiry(server, make_token, caplog):
    caplog.set_level(logging.INFO, logger="chatrelay.server.runtime")
    async with client(server, make_token("u1", ttl=None, exp=1893456000)) as ws:
        await _recv_event(ws)
    assert "u1 connected (1 live, token expires 2030-01-01T00:00:00.000Z)" in caplog.text


@pytest.mark.asyncio
async def test_serve_until_runs_until_stop_event(store_path, secret, make_token):
    cfg = RelayConfig(host="127.0.0.1", port=0, jwt_secret=secret, store_path=store_path)
    srv = RelayServer(cfg)
    stop_event = asyncio.Event()
    task = asyncio.create_task(srv.serve_until(stop_event))
    await _wait_until(lambda: srv.port != 0)
    port = srv.port

    async with client(srv, make_token("u1")) as ws:
        assert (await _recv_event(ws))[0] == EVENT_CONNECT

    stop_event.set()
    await asyncio.wait_for(task, 2.0)
    with pytest.raises(OSError):
        async with connect(f"ws://127.0.0.1:{port}"):
            pass
