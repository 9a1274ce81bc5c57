"""Tests for trader sessions: subscribe, liveness, ordering and reconnects.

A fake feed stands in for the indexer websocket; each connect call hands out
a fresh FakeWebSocket that the test drives directly.
"""

import asyncio
import json
from collections import namedtuple
from unittest.mock import MagicMock

import pytest
from aiohttp import WSMsgType

from conftest import ADDRESS, USER, is_tracked, position_payload, snapshot_frame, update_frame, fill_payload

from tracker.engine.ledger import LedgerBook
from tracker.engine.supervisor import ConnectionSupervisor, TraderSession, frame_account
from tracker.errors import ProtocolViolation

Message = namedtuple("Message", ["type", "data", "extra"], defaults=[None, None])


class FakeWebSocket:
    def __init__(self):
        self.sent: list[str] = []
        self.pongs: list[bytes] = []
        self.closed = False
        self.close_code = None
        self.closed_at: float | None = None
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    # -- client side, used by the session --

    async def send_str(self, data: str):
        self.sent.append(data)

    async def receive(self, timeout=None):
        return await asyncio.wait_for(self._inbox.get(), timeout)

    async def pong(self, data: bytes = b""):
        self.pongs.append(data)

    async def close(self, code: int = 1000):
        if not self.closed:
            self.closed = True
            self.close_code = code
            self.closed_at = asyncio.get_running_loop().time()
            self._inbox.put_nowait(Message(WSMsgType.CLOSED))

    def exception(self):
        return None

    # -- server side, used by the tests --

    def push(self, frame: dict):
        self._inbox.put_nowait(Message(WSMsgType.TEXT, json.dumps(frame)))

    def push_raw(self, text: str):
        self._inbox.put_nowait(Message(WSMsgType.TEXT, text))

    def ping(self, data: bytes = b"hb"):
        self._inbox.put_nowait(Message(WSMsgType.PING, data))

    def server_close(self, code: int = 1001):
        self.close_code = code
        self._inbox.put_nowait(Message(WSMsgType.CLOSE, code))


class BufferedWebSocket(FakeWebSocket):
    """Returns already-received messages without yielding, as aiohttp does."""

    async def receive(self, timeout=None):
        if not self._inbox.empty():
            return self._inbox.get_nowait()
        return await super().receive(timeout)


class FakeFeed:
    def __init__(self, socket_class=FakeWebSocket):
        self.socket_class = socket_class
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.opened_at: list[float] = []
        self.preload: list[Message] = []

    def __call__(self, url: str) -> FakeWebSocket:
        ws = self.socket_class()
        if not self.sockets:
            for msg in self.preload:
                ws._inbox.put_nowait(msg)
        self.urls.append(url)
        self.opened_at.append(asyncio.get_running_loop().time())
        self.sockets.append(ws)
        return ws


async def _wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _supervisor(feed, pipeline=None, heartbeat=5.0, reconnect=0.01) -> ConnectionSupervisor:
    return ConnectionSupervisor(
        url="wss://feed.test/v4/ws",
        channel="v4_subaccounts",
        book=LedgerBook(),
        is_tracked=is_tracked,
        pipeline=pipeline or MagicMock(),
        heartbeat_timeout=heartbeat,
        reconnect_interval=reconnect,
        connect=feed,
    )


def _subscribes(ws: FakeWebSocket) -> list[dict]:
    return [json.loads(s) for s in ws.sent]


# ---------------------------------------------------------------------------
# 1. Subscribe and liveness
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_session_subscribes_once_per_connection():
    feed = FakeFeed()
    supervisor = _supervisor(feed)
    supervisor.open(USER, ADDRESS)

    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)
    await asyncio.sleep(0.05)

    assert feed.urls == ["wss://feed.test/v4/ws"]
    assert _subscribes(feed.sockets[0]) == [
        {"type": "subscribe", "channel": "v4_subaccounts", "id": f"{ADDRESS}/0"}
    ]
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_silence_closes_and_reconnects():
    feed = FakeFeed()
    supervisor = _supervisor(feed, heartbeat=0.05, reconnect=0.05)
    session = supervisor.open(USER, ADDRESS)

    await _wait_for(lambda: len(feed.sockets) >= 3)
    await supervisor.close_all()

    assert feed.sockets[0].closed
    for ws in feed.sockets:
        assert len(_subscribes(ws)) <= 1
    assert session.connections >= 3

    # Each watchdog close is followed by a reopen one reconnect interval later
    for closed, reopened in zip(feed.sockets[:2], feed.opened_at[1:3]):
        gap = reopened - closed.closed_at
        assert 0.04 <= gap < 0.5
        assert closed.closed_at - feed.opened_at[feed.sockets.index(closed)] >= 0.04


@pytest.mark.asyncio
async def test_pings_keep_connection_alive():
    feed = FakeFeed()
    supervisor = _supervisor(feed, heartbeat=0.15)
    supervisor.open(USER, ADDRESS)
    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)

    ws = feed.sockets[0]
    for _ in range(8):
        ws.ping()
        await asyncio.sleep(0.05)

    assert len(feed.sockets) == 1
    assert not ws.closed
    assert ws.pongs == [b"hb"] * 8
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_server_close_triggers_reconnect():
    feed = FakeFeed()
    supervisor = _supervisor(feed)
    session = supervisor.open(USER, ADDRESS)
    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)

    feed.sockets[0].server_close()
    await _wait_for(lambda: len(feed.sockets) == 2 and feed.sockets[1].sent)

    assert len(_subscribes(feed.sockets[1])) == 1
    assert session.connections == 2
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_connect_failure_is_retried():
    attempts = []
    feed = FakeFeed()

    def flaky(url):
        attempts.append(url)
        if len(attempts) < 3:
            raise ConnectionRefusedError("feed down")
        return feed(url)

    supervisor = _supervisor(flaky)
    supervisor.open(USER, ADDRESS)

    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)
    assert len(attempts) == 3
    await supervisor.close_all()


# ---------------------------------------------------------------------------
# 2. Frame handling through the socket
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_frames_are_applied_in_receipt_order():
    feed = FakeFeed()
    pipeline = MagicMock()
    supervisor = _supervisor(feed, pipeline=pipeline)
    supervisor.open(USER, ADDRESS)
    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)

    ws = feed.sockets[0]
    ws.push(snapshot_frame({"BTC-USD": position_payload()}))
    ws.push(update_frame([position_payload(size="4", sum_close="6", exit="105")], [fill_payload()]))
    ws.push(update_frame(
        [position_payload(status="CLOSED", size="0", sum_close="10", exit="106")],
        [fill_payload()],
    ))
    await _wait_for(lambda: pipeline.enqueue.call_count == 3)

    rows = [c.args[0] for c in pipeline.enqueue.call_args_list]
    assert [r.type for r in rows] == ["update", "update", "close"]
    assert [r.size for r in rows] == [10, 4, 10]
    assert supervisor.book.lanes(ADDRESS) == {}
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_frames_buffered_before_close_are_applied():
    feed = FakeFeed(socket_class=BufferedWebSocket)
    feed.preload = [
        Message(WSMsgType.TEXT, json.dumps(snapshot_frame({"BTC-USD": position_payload()}))),
        Message(WSMsgType.TEXT, json.dumps(update_frame(
            [position_payload(status="CLOSED", size="0", sum_close="10", exit="106")],
            [fill_payload()],
        ))),
        Message(WSMsgType.CLOSE, 1000),
    ]
    pipeline = MagicMock()
    supervisor = _supervisor(feed, pipeline=pipeline)
    supervisor.open(USER, ADDRESS)

    await _wait_for(lambda: len(feed.sockets) == 2 and feed.sockets[1].sent)

    rows = [c.args[0] for c in pipeline.enqueue.call_args_list]
    assert [r.type for r in rows] == ["update", "close"]
    assert rows[1].trade_id == f"{ADDRESS}-BTCUSD-LONG-1000"
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_undefined_account_forces_reconnect():
    feed = FakeFeed()
    supervisor = _supervisor(feed)
    supervisor.open(USER, ADDRESS)
    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)

    frame = update_frame([position_payload()], [fill_payload()])
    frame["id"] = "undefined/0"
    feed.sockets[0].push(frame)

    await _wait_for(lambda: len(feed.sockets) == 2 and feed.sockets[1].sent)
    assert feed.sockets[0].closed
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_bad_frame_does_not_drop_connection():
    feed = FakeFeed()
    pipeline = MagicMock()
    supervisor = _supervisor(feed, pipeline=pipeline)
    supervisor.open(USER, ADDRESS)
    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)

    ws = feed.sockets[0]
    ws.push_raw("{not json")
    ws.push({"type": "error", "message": "Invalid subscribe message"})
    ws.push(snapshot_frame({"BTC-USD": position_payload()}))
    await _wait_for(lambda: pipeline.enqueue.call_count == 1)

    assert len(feed.sockets) == 1
    assert not ws.closed
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_reconnect_resets_lanes_and_snapshot_rebuilds():
    feed = FakeFeed()
    supervisor = _supervisor(feed)
    supervisor.open(USER, ADDRESS)
    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)

    feed.sockets[0].push(snapshot_frame({"BTC-USD": position_payload()}))
    await _wait_for(lambda: "BTCUSD" in supervisor.book.lanes(ADDRESS))

    feed.sockets[0].server_close()
    await _wait_for(lambda: len(feed.sockets) == 2 and feed.sockets[1].sent)
    assert supervisor.book.lanes(ADDRESS) == {}

    feed.sockets[1].push(snapshot_frame({"ETH-USD": position_payload(market="ETH-USD")}))
    await _wait_for(lambda: supervisor.book.lanes(ADDRESS))
    assert list(supervisor.book.lanes(ADDRESS)) == ["ETHUSD"]
    await supervisor.close_all()


# ---------------------------------------------------------------------------
# 3. Draining and supervisor bookkeeping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_closed_session_never_reconnects():
    feed = FakeFeed()
    supervisor = _supervisor(feed, heartbeat=0.1)
    session = supervisor.open(USER, ADDRESS)
    await _wait_for(lambda: feed.sockets and feed.sockets[0].sent)
    feed.sockets[0].push(snapshot_frame({"BTC-USD": position_payload()}))
    await _wait_for(lambda: supervisor.book.lanes(ADDRESS))

    await supervisor.close(ADDRESS)
    count = len(feed.sockets)
    await asyncio.sleep(0.15)

    assert len(feed.sockets) == count
    assert session.draining
    assert not session.running
    assert not supervisor.has(ADDRESS)
    assert ADDRESS not in supervisor.book.traders()


@pytest.mark.asyncio
async def test_open_is_idempotent_per_address():
    feed = FakeFeed()
    supervisor = _supervisor(feed)
    first = supervisor.open(USER, ADDRESS)
    second = supervisor.open(USER, ADDRESS)
    other = supervisor.open(8, "dydx1other")

    assert first is second
    assert supervisor.addresses() == [ADDRESS, "dydx1other"]
    assert supervisor.get("dydx1other") is other
    await _wait_for(lambda: len(feed.sockets) == 2)

    statuses = {s["address"]: s for s in supervisor.status()}
    assert statuses["dydx1other"]["user"] == 8
    await supervisor.close_all()
    assert supervisor.addresses() == []


# ---------------------------------------------------------------------------
# 4. Frame parsing without a socket
# ---------------------------------------------------------------------------

def _session(pipeline=None) -> TraderSession:
    return TraderSession(
        USER,
        ADDRESS,
        url="wss://feed.test/v4/ws",
        channel="v4_subaccounts",
        book=LedgerBook(),
        is_tracked=is_tracked,
        pipeline=pipeline or MagicMock(),
        connect=FakeFeed(),
    )


class TestHandleFrame:
    def test_skips_unparseable_and_non_data_frames(self):
        pipeline = MagicMock()
        session = _session(pipeline)

        assert session.handle_frame("{oops") == []
        assert session.handle_frame("[1, 2]") == []
        assert session.handle_frame(json.dumps({"type": "connected", "connection_id": "c0"})) == []
        assert session.handle_frame(json.dumps({"type": "error", "message": "bad"})) == []
        pipeline.enqueue.assert_not_called()

    def test_snapshot_and_update_enqueue_rows(self):
        pipeline = MagicMock()
        session = _session(pipeline)

        rows = session.handle_frame(json.dumps(snapshot_frame({"BTC-USD": position_payload()})))
        assert [r.token for r in rows] == ["BTCUSD"]

        rows = session.handle_frame(json.dumps(
            update_frame([position_payload(market="ETH-USD")], [fill_payload(height="3000")])
        ))
        assert rows[0].trade_id == f"{ADDRESS}-ETHUSD-LONG-3000"
        assert pipeline.enqueue.call_count == 2

    def test_undefined_account_is_protocol_violation(self):
        session = _session()
        frame = update_frame([position_payload()], [fill_payload()], address="undefined")
        with pytest.raises(ProtocolViolation):
            session.handle_frame(json.dumps(frame))

    def test_subscribe_message_uses_subaccount(self):
        session = _session()
        session.subaccount_number = 2
        assert session.subscribe_message()["id"] == f"{ADDRESS}/2"


@pytest.mark.parametrize(
    "frame, expected",
    [
        ({"id": "dydx1abc/0"}, "dydx1abc"),
        ({"id": "undefined/0"}, None),
        ({"id": "/0"}, None),
        ({"id": None}, None),
        ({}, None),
        ({"id": "dydx1abc/0", "account": "undefined"}, None),
        ({"id": "dydx1abc/0", "account": None}, None),
    ],
)
def test_frame_account(frame, expected):
    assert frame_account(frame) == expected
