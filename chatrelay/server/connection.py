from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.server import ServerConnection

from chatrelay.core import proto

log = logging.getLogger("chatrelay.server.connection")

_ids = itertools.count(1)


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One client WebSocket plus its outbound queue.

    ``post`` never waits on the network: frames are queued and written by a per-connection
    writer task, in order. Hashing is by object identity so a Connection can live in the
    presence registry's sets.
    """

    websocket: ServerConnection
    queue_size: int = 256
    state: ConnectionState = ConnectionState.CONNECTING
    identity: Optional[proto.Identity] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    conn_id: int = field(default_factory=lambda: next(_ids))
    _outbox: asyncio.Queue = field(init=False, repr=False)
    _writer: Optional[asyncio.Task] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._outbox = asyncio.Queue(maxsize=self.queue_size)

    @property
    def label(self) -> str:
        return f"{self.identity}#{self.conn_id}" if self.identity is not None else f"#{self.conn_id}"

    def post(self, event: str, data: Dict[str, Any]) -> bool:
        if self.state is ConnectionState.CLOSED:
            return False
        try:
            self._outbox.put_nowait(proto.build_frame(event, data))
        except asyncio.QueueFull:
            log.warning("Outbox full for %s, dropping %s event", self.label, event)
            return False
        return True

    def start_writer(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain(), name=f"writer-{self.conn_id}")

    async def _drain(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send(proto.encode_frame(frame))
            except websockets.ConnectionClosed:
                log.debug("Transport closed for %s while writing", self.label)
                return

    async def close(self, code: int, reason: str) -> None:
        self.state = ConnectionState.CLOSED
        await self.websocket.close(code, reason)

    async def shutdown(self) -> None:
        """Mark closed and stop the writer. Safe to call more than once."""
        self.state = ConnectionState.CLOSED
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer


__all__ = ["Connection", "ConnectionState"]
