from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
import uuid
from typing import Any, Dict, Optional

import orjson
import websockets
from websockets.asyncio.client import ClientConnection, connect

from chatrelay.core import proto

log = logging.getLogger("chatrelay.cmd.client")


class ClientApp:
    """Small interactive client for poking at a running relay."""

    def __init__(self, server_url: str, token: str) -> None:
        self.server_url = server_url
        self.token = token
        self.ws: Optional[ClientConnection] = None
        self.pending: Dict[str, str] = {}
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with connect(self.server_url) as ws:
            self.ws = ws
            await ws.send(orjson.dumps({"token": self.token}).decode("utf-8"))
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("Client ready. Commands: /tell <user> <msg>, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            parts = line.split(" ", 2)
            if parts[0] == "/tell" and len(parts) == 3:
                await self._cmd_tell(parts[1], parts[2])
            elif parts[0] in {"/quit", "/exit"}:
                self.stop_event.set()
            else:
                print("Unknown command")

    async def _cmd_tell(self, target: str, text: str) -> None:
        assert self.ws is not None
        temp_id = uuid.uuid4().hex
        self.pending[temp_id] = target
        frame = proto.build_frame(proto.EVENT_MESSAGE, {"to": target, "content": text, "tempId": temp_id})
        await self.ws.send(proto.encode_frame(frame))

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = proto.decode_frame(raw)
                except ValueError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(frame.get("event"), frame.get("data") or {})
        except websockets.ConnectionClosed as exc:
            reason = exc.rcvd.reason if exc.rcvd is not None else ""
            print(f"Connection closed {reason}".rstrip())
        finally:
            self.stop_event.set()

    def _handle_incoming(self, event: Any, data: Dict[str, Any]) -> None:
        if event == proto.EVENT_CONNECT:
            print(f"Connected as {data.get('id')}")
        elif event == proto.EVENT_MESSAGE:
            print(f"[{data.get('ts')}] {data.get('from')}: {data.get('content')}")
        elif event == proto.EVENT_SENT:
            target = self.pending.pop(data.get("tempId"), "?")
            print(f"(delivered to {target} as {data.get('serverId')})")
        elif event == proto.EVENT_ERROR:
            self.pending.pop(data.get("tempId"), None)
            print(f"(not sent: {data.get('reason')})")
        else:
            log.debug("Unhandled event %r", event)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Interactive relay client")
    parser.add_argument("--url", default="ws://127.0.0.1:4000", help="Relay WebSocket URL")
    parser.add_argument("--token", default=os.getenv("CHAT_TOKEN"), help="Signed JWT (or set CHAT_TOKEN)")
    args = parser.parse_args(argv)
    if not args.token:
        parser.error("a token is required (--token or CHAT_TOKEN)")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = ClientApp(args.url, args.token)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(app.run())


if __name__ == "__main__":
    main()
