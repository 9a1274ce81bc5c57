"""Connection supervisor: one live indexer subscription per followed trader.

Each ``TraderSession`` keeps its websocket alive on its own:

- every (re)connect clears the trader's lanes and sends one subscribe
  request; the snapshot that answers it rebuilds the lanes
- any frame or protocol ping proves the link alive; silence for
  ``heartbeat_timeout`` seconds closes the socket
- every close (silence, server close, socket error, protocol violation) is
  followed by a reconnect after ``reconnect_interval`` seconds, forever,
  unless the session is draining
- frames are handed to a single worker through a queue, so the ledger sees
  them strictly in receipt order
"""

import asyncio
import json
import logging
import time
from contextlib import suppress
from typing import Any, Callable, Optional

import aiohttp
from aiohttp import WSMsgType

from tracker.engine.ledger import LedgerBook, SymbolFilter, TraderPosition, apply_snapshot, apply_update
from tracker.engine.pipeline import BatchPipeline
from tracker.errors import ProtocolViolation
from tracker.utils.constants import DATA_TYPE, ERROR_TYPE, SUBSCRIPTION_TYPE

logger = logging.getLogger(__name__)

# Returns an async context manager yielding an aiohttp-compatible websocket
Connector = Callable[[str], Any]

_CLOSED_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)
_UNDEFINED_ACCOUNTS = ("", "undefined", "null")


def frame_account(frame: dict) -> str | None:
    """Address a data frame belongs to, or None if the feed left it undefined."""
    if "account" in frame and frame["account"] in (None, *_UNDEFINED_ACCOUNTS):
        return None
    ident = frame.get("id")
    if not isinstance(ident, str):
        return None
    account = ident.split("/")[0]
    return None if account in _UNDEFINED_ACCOUNTS else account


class TraderSession:
    """Live subscription for one trader address."""

    def __init__(
        self,
        user: int,
        address: str,
        *,
        url: str,
        channel: str,
        book: LedgerBook,
        is_tracked: SymbolFilter,
        pipeline: BatchPipeline,
        connect: Connector,
        subaccount_number: int = 0,
        heartbeat_timeout: float = 31.0,
        reconnect_interval: float = 1.0,
    ):
        self.user = user
        self.address = address
        self.url = url
        self.channel = channel
        self.subaccount_number = subaccount_number
        self.heartbeat_timeout = heartbeat_timeout
        self.reconnect_interval = reconnect_interval
        self._book = book
        self._is_tracked = is_tracked
        self._pipeline = pipeline
        self._connect = connect

        self.draining = False
        self.connected = False
        self.connections = 0
        self.last_frame_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    def subscribe_message(self) -> dict:
        return {
            "type": "subscribe",
            "channel": self.channel,
            "id": f"{self.address}/{self.subaccount_number}",
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"session:{self.address}")

    async def close(self):
        """Stop the session for good; no reconnect follows."""
        self.draining = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._book.drop(self.address)
        logger.info(f"[{self.address}] Session closed, not reconnecting")

    async def _run(self):
        while not self.draining:
            try:
                await self._run_connection()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[{self.address}] Connection error: {e}")
            finally:
                self.connected = False

            if self.draining:
                break
            logger.info(f"[{self.address}] Reconnecting in {self.reconnect_interval}s")
            await asyncio.sleep(self.reconnect_interval)

    async def _run_connection(self):
        async with self._connect(self.url) as ws:
            self.connected = True
            self.connections += 1
            self._book.reset(self.address)
            await ws.send_str(json.dumps(self.subscribe_message()))
            self.last_frame_at = time.monotonic()
            logger.info(f"[{self.address}] Subscribed to {self.channel} (user {self.user})")

            frames: asyncio.Queue[str | None] = asyncio.Queue()
            worker = asyncio.create_task(self._consume(frames, ws))
            try:
                await self._read(ws, frames)
            except asyncio.CancelledError:
                worker.cancel()
                raise
            finally:
                # Frames read before the socket closed are still applied, in order
                frames.put_nowait(None)
                with suppress(asyncio.CancelledError):
                    await worker

    async def _read(self, ws, frames: asyncio.Queue):
        while True:
            try:
                msg = await ws.receive(timeout=self.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[{self.address}] No frames or pings for {self.heartbeat_timeout}s, "
                    f"closing connection"
                )
                await ws.close()
                return

            self.last_frame_at = time.monotonic()
            if msg.type == WSMsgType.TEXT:
                frames.put_nowait(msg.data)
            elif msg.type == WSMsgType.PING:
                await ws.pong(msg.data)
            elif msg.type in _CLOSED_TYPES:
                logger.info(f"[{self.address}] Websocket closed (code {ws.close_code})")
                return
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"[{self.address}] Websocket error: {ws.exception()}")
                return

    async def _consume(self, frames: asyncio.Queue, ws):
        while True:
            raw = await frames.get()
            if raw is None:
                return
            try:
                self.handle_frame(raw)
            except ProtocolViolation as e:
                logger.error(f"[{self.address}] {e}, forcing reconnection")
                await ws.close()
                return
            except Exception as e:
                logger.error(f"[{self.address}] Error processing frame: {e}", exc_info=True)

    def handle_frame(self, raw: str | bytes) -> list[TraderPosition]:
        """Apply one raw frame to the trader's lanes and queue the resulting rows."""
        try:
            frame = json.loads(raw)
        except ValueError as e:
            logger.error(f"[{self.address}] Unparseable frame skipped: {e}")
            return []
        if not isinstance(frame, dict):
            logger.error(f"[{self.address}] Unexpected frame skipped: {raw!r:.200}")
            return []

        frame_type = frame.get("type")
        if frame_type == ERROR_TYPE:
            logger.error(f"[{self.address}] Feed error: {frame.get('message')}")
            return []
        if frame_type not in (SUBSCRIPTION_TYPE, DATA_TYPE):
            return []

        account = frame_account(frame)
        if account is None:
            raise ProtocolViolation(f"Frame for undefined account (id={frame.get('id')!r})")

        contents = frame.get("contents") or {}
        lanes = self._book.lanes(self.address)
        if frame_type == SUBSCRIPTION_TYPE:
            subaccount = contents.get("subaccount") or {}
            rows = apply_snapshot(
                lanes, self.user, account,
                subaccount.get("openPerpetualPositions"),
                self._is_tracked,
            )
        else:
            rows = apply_update(
                lanes, self.user, account,
                contents.get("perpetualPositions"),
                contents.get("fills"),
                self._is_tracked,
            )

        for row in rows:
            self._pipeline.enqueue(row)
        return rows

    def status(self) -> dict:
        return {
            "user": self.user,
            "address": self.address,
            "connected": self.connected,
            "draining": self.draining,
            "connections": self.connections,
            "open_lanes": self._book.open_count(self.address),
            "seconds_since_frame": (
                round(time.monotonic() - self.last_frame_at, 1)
                if self.last_frame_at is not None else None
            ),
        }


class ConnectionSupervisor:
    """Owns the sessions of all followed traders, keyed by address."""

    def __init__(
        self,
        url: str,
        channel: str,
        book: LedgerBook,
        is_tracked: SymbolFilter,
        pipeline: BatchPipeline,
        subaccount_number: int = 0,
        heartbeat_timeout: float = 31.0,
        reconnect_interval: float = 1.0,
        connect: Optional[Connector] = None,
    ):
        self.url = url
        self.channel = channel
        self.subaccount_number = subaccount_number
        self.heartbeat_timeout = heartbeat_timeout
        self.reconnect_interval = reconnect_interval
        self.book = book
        self._is_tracked = is_tracked
        self._pipeline = pipeline
        self._connect = connect or self._ws_connect
        self._http: Optional[aiohttp.ClientSession] = None
        self._sessions: dict[str, TraderSession] = {}

    def _ws_connect(self, url: str):
        """Open a websocket with pings surfaced to the reader (autoping off)."""
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http.ws_connect(url, autoping=False)

    def open(self, user: int, address: str) -> TraderSession:
        """Start following ``address``; returns the existing session if already live."""
        session = self._sessions.get(address)
        if session is not None:
            return session

        session = TraderSession(
            user,
            address,
            url=self.url,
            channel=self.channel,
            book=self.book,
            is_tracked=self._is_tracked,
            pipeline=self._pipeline,
            connect=self._connect,
            subaccount_number=self.subaccount_number,
            heartbeat_timeout=self.heartbeat_timeout,
            reconnect_interval=self.reconnect_interval,
        )
        self._sessions[address] = session
        session.start()
        logger.info(f"[{address}] Session opened for user {user}")
        return session

    async def close(self, session: TraderSession | str):
        address = session if isinstance(session, str) else session.address
        found = self._sessions.pop(address, None)
        if found is not None:
            await found.close()

    async def close_all(self):
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(s.close() for s in sessions))
        if self._http is not None and not self._http.closed:
            await self._http.close()
        logger.info(f"Closed {len(sessions)} trader sessions")

    def has(self, address: str) -> bool:
        return address in self._sessions

    def get(self, address: str) -> Optional[TraderSession]:
        return self._sessions.get(address)

    def addresses(self) -> list[str]:
        return list(self._sessions)

    def status(self) -> list[dict]:
        return [s.status() for s in self._sessions.values()]
