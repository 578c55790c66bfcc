from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Set

from .errors import PresenceLimitExceeded
from .proto import Identity, identity_key

"""
Presence registry
-----------------
Tracks which live connections belong to which identity (the identity's delivery group).

  • register(identity, conn)       → add conn to the group (idempotent)
  • unregister(identity, conn)     → remove it (idempotent, empty groups pruned)
  • connections_for(identity)      → frozen snapshot used for one delivery pass

Every method runs to completion without awaiting, so on a single event loop there is no
interleaving to guard against and no lock is shared with the message store.
"""


log = logging.getLogger("chatrelay.presence")


class Outbound(Protocol):
    """Anything the router can post events to (server Connection, test fakes)."""

    def post(self, event: str, data: Dict[str, Any]) -> bool: ...


class PresenceRegistry:
    def __init__(self, max_connections_per_identity: Optional[int] = None) -> None:
        self.max_connections_per_identity = max_connections_per_identity
        self._groups: Dict[str, Set[Outbound]] = {}

    def register(self, identity: Identity, connection: Outbound) -> None:
        key = identity_key(identity)
        group = self._groups.get(key, set())
        if connection in group:
            return
        limit = self.max_connections_per_identity
        if limit is not None and len(group) >= limit:
            raise PresenceLimitExceeded(f"{key} already has {len(group)} connection(s)")
        group.add(connection)
        self._groups[key] = group
        log.debug("Registered connection for %s (%d live)", key, len(group))

    def unregister(self, identity: Identity, connection: Outbound) -> bool:
        key = identity_key(identity)
        group = self._groups.get(key)
        if not group or connection not in group:
            return False
        group.discard(connection)
        if not group:
            del self._groups[key]
        log.debug("Unregistered connection for %s (%d live)", key, len(group))
        return True

    def connections_for(self, identity: Identity) -> FrozenSet[Outbound]:
        return frozenset(self._groups.get(identity_key(identity), ()))

    def count(self, identity: Identity) -> int:
        return len(self._groups.get(identity_key(identity), ()))

    def identities(self) -> List[str]:
        return sorted(self._groups)

    def __contains__(self, identity: object) -> bool:
        return isinstance(identity, (str, int)) and identity_key(identity) in self._groups

    def __len__(self) -> int:
        return len(self._groups)


__all__ = ["Outbound", "PresenceRegistry"]
