from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from chatrelay.config import RelayConfig
from chatrelay.core import auth, proto
from chatrelay.core.errors import AuthError, InvalidPayload, MissingToken, PresenceLimitExceeded, StoreError
from chatrelay.core.presence import PresenceRegistry
from chatrelay.core.router import Router
from chatrelay.core.store import MessageStore
from chatrelay.core.sweeper import RetentionSweeper
from chatrelay.server.connection import Connection, ConnectionState

log = logging.getLogger("chatrelay.server.runtime")

CLOSE_UNAUTHORIZED = 4401
CLOSE_TOO_MANY = 4429


class RelayServer:
    """WebSocket relay: handshake, presence, routing and retention in one process."""

    def __init__(self, config: RelayConfig) -> None:
        self.cfg = config
        self.store = MessageStore(config.store_path)
        self.registry = PresenceRegistry(config.max_connections_per_identity)
        self.router = Router(self.store, self.registry)
        self.sweeper = RetentionSweeper(
            self.store,
            retention=config.retention,
            interval=config.sweep_interval,
        )
        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.ensure()
        self._ws_server = await serve(self._handle_connection, self.cfg.host, self.cfg.port)
        log.info("Chat relay listening on ws://%s:%d", self.cfg.host, self.port)
        self.sweeper.start()

    async def stop(self) -> None:
        # Stop accepting and drain connections first so no route is mid-append when the
        # sweeper goes away.
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        await self.sweeper.stop()

    async def serve_until(self, stop_event: asyncio.Event) -> None:
        """Run until ``stop_event`` is set, then shut down cleanly."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    @property
    def port(self) -> int:
        if self._ws_server is None:
            return self.cfg.port
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return self.cfg.port

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket, queue_size=self.cfg.outbound_queue_size)
        try:
            if not await self._handshake(conn):
                return
            if not await self._activate(conn):
                return
            async for raw in websocket:
                await self._dispatch(conn, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self._on_disconnect(conn)

    async def _handshake(self, conn: Connection) -> bool:
        try:
            raw = await asyncio.wait_for(conn.websocket.recv(), self.cfg.handshake_timeout_seconds)
        except asyncio.TimeoutError:
            raw = None

        try:
            credential = auth.verify(
                proto.extract_token(raw),
                self.cfg.jwt_secret,
                algorithms=self.cfg.jwt_algorithms,
                leeway=self.cfg.jwt_leeway_seconds,
            )
        except AuthError as exc:
            level = logging.INFO if isinstance(exc, MissingToken) else logging.WARNING
            log.log(level, "Rejected handshake from %s: %s", _fmt_remote(conn.websocket), exc.detail)
            await conn.close(CLOSE_UNAUTHORIZED, exc.reason)
            return False

        conn.identity = credential.identity
        conn.claims = credential.claims
        conn.state = ConnectionState.AUTHENTICATED
        return True

    async def _activate(self, conn: Connection) -> bool:
        assert conn.identity is not None
        try:
            self.registry.register(conn.identity, conn)
        except PresenceLimitExceeded as exc:
            log.warning("Refusing %s: %s", conn.label, exc)
            await conn.close(CLOSE_TOO_MANY, "Too many connections")
            return False

        conn.state = ConnectionState.ACTIVE
        conn.start_writer()
        conn.post(proto.EVENT_CONNECT, {"id": conn.identity})
        log.info(
            "%s connected (%d live, token expires %s)",
            conn.identity,
            self.registry.count(conn.identity),
            _fmt_expiry(conn.claims),
        )
        return True

    async def _dispatch(self, conn: Connection, raw: Union[str, bytes]) -> None:
        try:
            frame = proto.decode_frame(raw)
        except ValueError:
            log.debug("Ignoring unparseable frame from %s", conn.label)
            return

        event = frame.get("event")
        data = frame.get("data")
        if event != proto.EVENT_MESSAGE:
            log.debug("Ignoring unsupported event %r from %s", event, conn.label)
            return

        try:
            await self.router.route(conn, conn.identity, data)
        except InvalidPayload as exc:
            log.debug("Dropped message from %s: %s", conn.label, exc)
            self._report(conn, data, exc.code)
        except StoreError:
            log.exception("Message from %s was not persisted", conn.label)
            self._report(conn, data, StoreError.code)

    def _report(self, conn: Connection, data: Any, reason: str) -> None:
        if not self.cfg.report_invalid_payloads:
            return
        temp_id = data.get("tempId") if isinstance(data, dict) else None
        conn.post(proto.EVENT_ERROR, {"tempId": temp_id, "reason": reason})

    async def _on_disconnect(self, conn: Connection) -> None:
        was_registered = conn.identity is not None and self.registry.unregister(conn.identity, conn)
        await conn.shutdown()
        if was_registered:
            log.info("%s disconnected (%d live)", conn.identity, self.registry.count(conn.identity))


def _fmt_expiry(claims: Dict[str, Any]) -> str:
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return "never"
    try:
        return proto.format_ts(datetime.fromtimestamp(exp, tz=timezone.utc))
    except (OverflowError, OSError, ValueError):
        return str(exp)


def _fmt_remote(websocket: ServerConnection) -> str:
    peer = websocket.remote_address
    if isinstance(peer, tuple):
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


__all__ = ["RelayServer", "CLOSE_UNAUTHORIZED", "CLOSE_TOO_MANY"]
