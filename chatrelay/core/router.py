from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError

from .errors import InvalidPayload
from .presence import Outbound, PresenceRegistry
from .proto import EVENT_MESSAGE, EVENT_SENT, Ack, Identity, Message, SendRequest, format_ts, new_message_id, utcnow
from .store import MessageStore

log = logging.getLogger("chatrelay.router")


def parse_send_request(payload: Any) -> SendRequest:
    if not isinstance(payload, dict):
        raise InvalidPayload("payload must be an object")
    try:
        return SendRequest.model_validate(payload)
    except ValidationError as exc:
        raise InvalidPayload(f"invalid message payload: {exc.error_count()} error(s)") from exc


class Router:
    """Persist, deliver, acknowledge.

    For one message the order is fixed: the store append completes before any recipient
    connection is posted to, and the ack is posted to the sender last. Posting only enqueues
    on each connection's outbox, so a slow recipient never holds up routing.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: PresenceRegistry,
        *,
        now: Callable[[], datetime] = utcnow,
        new_id: Callable[[], str] = new_message_id,
    ) -> None:
        self.store = store
        self.registry = registry
        self._now = now
        self._new_id = new_id

    async def route(self, sender: Outbound, sender_identity: Identity, payload: Any) -> Ack:
        request = parse_send_request(payload)
        message = Message(
            id=self._new_id(),
            from_=sender_identity,
            to=request.to,
            content=request.content,
            ts=format_ts(self._now()),
        )

        # StoreError propagates: nothing is delivered or acknowledged for an unsaved message.
        await self.store.append(message)

        delivered = self.deliver(message)

        ack = Ack(temp_id=request.temp_id, server_id=message.id, ts=message.ts)
        sender.post(EVENT_SENT, ack.to_record())

        log.info("%s -> %s: message %s delivered to %d connection(s)", message.from_, message.to, message.id, delivered)
        log.debug("message %s content: %r", message.id, message.content)
        return ack

    def deliver(self, message: Message) -> int:
        record = message.to_record()
        delivered = 0
        for connection in self.registry.connections_for(message.to):
            if connection.post(EVENT_MESSAGE, record):
                delivered += 1
        return delivered


__all__ = ["Router", "parse_send_request"]
