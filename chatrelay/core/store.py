from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Sequence, TypeVar, Union

import orjson
from pydantic import ValidationError

from .errors import StoreError
from .proto import Message, parse_ts

"""
MessageStore - JSON-file backed message log
-------------------------------------------
The whole log lives in one human-readable JSON array, rewritten in full on every mutation.

Responsibilities:
- Keep arrival order (append-only from the router's point of view).
- Run every read-modify-write (append, save, prune) as one worker-thread call holding a
  threading.Lock, so concurrent appends never drop each other and a cancelled caller cannot
  release the lock while its write is still in flight.
- Replace the file atomically (temp file, fsync, os.replace) so a reader never sees a
  partial write and a failed write leaves the previous content intact.
- Degrade to an empty log on unreadable content rather than failing the caller.

Scaling limit: every append and every sweep rewrites the whole file, which is fine for a
day's worth of direct messages but not for large volumes.
"""

log = logging.getLogger("chatrelay.store")

T = TypeVar("T")


class MessageStore:
    """Single-writer message log stored at ``path``."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        # Held by the worker thread for the whole read-modify-write. A cancelled awaiter
        # leaves the thread running with the lock still held, so the next writer waits.
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ensure(self) -> None:
        """Create the parent directory and an empty log if nothing exists yet."""
        if await self._exclusive(self._ensure_sync):
            log.info("Created empty message store at %s", self.path)

    async def load(self) -> List[Message]:
        return await asyncio.to_thread(self._read)

    async def append(self, message: Message) -> None:
        await self._exclusive(self._append_sync, message)

    async def save(self, messages: Sequence[Message]) -> None:
        await self._exclusive(self._write, list(messages))

    async def prune(self, cutoff: datetime) -> int:
        """Drop messages with ``ts <= cutoff``; rewrite only if something was removed."""
        return await self._exclusive(self._prune_sync, cutoff)

    # ------------------------------------------------------------------
    # Locked sections (run in a worker thread)
    # ------------------------------------------------------------------

    async def _exclusive(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._run_locked, fn, *args)

    def _run_locked(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            return fn(*args)

    def _ensure_sync(self) -> bool:
        if self.path.exists():
            return False
        self._write([])
        return True

    def _append_sync(self, message: Message) -> None:
        messages = self._read()
        messages.append(message)
        self._write(messages)

    def _prune_sync(self, cutoff: datetime) -> int:
        messages = self._read()
        kept = [m for m in messages if _is_after(m, cutoff)]
        removed = len(messages) - len(kept)
        if removed:
            self._write(kept)
        return removed

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _read(self) -> List[Message]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            log.warning("Cannot read message store %s: %s", self.path, exc)
            return []

        if not raw.strip():
            return []
        try:
            records = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            log.warning("Message store %s is corrupt, treating as empty: %s", self.path, exc)
            return []
        if not isinstance(records, list):
            log.warning("Message store %s does not hold a list, treating as empty", self.path)
            return []

        messages: List[Message] = []
        for index, record in enumerate(records):
            try:
                messages.append(Message.model_validate(record))
            except ValidationError:
                log.warning("Skipping malformed record #%d in %s", index, self.path)
        return messages

    def _write(self, messages: List[Message]) -> None:
        try:
            payload = orjson.dumps([m.to_record() for m in messages], option=orjson.OPT_INDENT_2)
        except TypeError as exc:
            raise StoreError(f"cannot serialize messages: {exc}") from exc

        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
            raise StoreError(f"cannot write message store {self.path}: {exc}") from exc


def _is_after(message: Message, cutoff: datetime) -> bool:
    try:
        return message.timestamp > cutoff
    except ValueError:
        log.debug("Dropping message %s with unparseable ts %r", message.id, message.ts)
        return False


__all__ = ["MessageStore"]
