from __future__ import annotations

import binascii
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import orjson
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .errors import InvalidToken, MissingToken
from .proto import Identity, b64url, b64url_decode

"""
Credential verification
-----------------------
Clients present an HMAC-signed JWT (compact serialization) at handshake time. This module only
verifies; issuing tokens belongs to the account service. ``encode_token`` is kept for local
tooling (scripts/gen_token.py) and the test-suite.

Checks, in order:
  1) three dot-separated base64url segments, JSON object header and payload
  2) header ``alg`` is one of the allowed HMAC algorithms
  3) signature (constant-time compare via cryptography's HMAC.verify)
  4) ``exp`` / ``nbf`` against ``now`` with an optional leeway
  5) an identity claim (``id``, falling back to ``sub``)
"""

HMAC_ALGORITHMS = {
    "HS256": hashes.SHA256,
    "HS384": hashes.SHA384,
    "HS512": hashes.SHA512,
}


@dataclass(frozen=True)
class Credential:
    identity: Identity
    claims: Dict[str, Any] = field(default_factory=dict)


def _signature(secret: str, algorithm: str, signing_input: bytes) -> hmac.HMAC:
    mac = hmac.HMAC(secret.encode("utf-8"), HMAC_ALGORITHMS[algorithm]())
    mac.update(signing_input)
    return mac


def _decode_segment(segment: str) -> Dict[str, Any]:
    try:
        value = orjson.loads(b64url_decode(segment))
    except (binascii.Error, ValueError):
        raise InvalidToken("malformed token segment") from None
    if not isinstance(value, dict):
        raise InvalidToken("token segment is not an object")
    return value


def _numeric_claim(claims: Dict[str, Any], name: str) -> Optional[float]:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidToken(f"{name} claim must be numeric")
    return float(value)


def verify(
    raw_token: Any,
    secret: str,
    *,
    algorithms: Iterable[str] = ("HS256",),
    now: Optional[float] = None,
    leeway: float = 0,
) -> Credential:
    """Verify ``raw_token`` against ``secret``.

    Raises MissingToken when no token was supplied and InvalidToken for every other failure.
    """
    if not isinstance(raw_token, str) or not raw_token:
        raise MissingToken()

    try:
        header_b64, payload_b64, signature_b64 = raw_token.split(".")
    except ValueError:
        raise InvalidToken("malformed token: expected 3 parts") from None

    header = _decode_segment(header_b64)
    alg = header.get("alg")
    allowed = set(algorithms)
    if alg not in allowed or alg not in HMAC_ALGORITHMS:
        raise InvalidToken(f"algorithm not allowed: {alg!r}")

    try:
        signature = b64url_decode(signature_b64)
    except (binascii.Error, ValueError):
        raise InvalidToken("malformed signature") from None

    signing_input = f"{header_b64}.{payload_b64}".encode("ascii", errors="replace")
    try:
        _signature(secret, alg, signing_input).verify(signature)
    except InvalidSignature:
        raise InvalidToken("invalid signature") from None

    claims = _decode_segment(payload_b64)

    current = time.time() if now is None else now
    exp = _numeric_claim(claims, "exp")
    if exp is not None and current >= exp + leeway:
        raise InvalidToken("token expired")
    nbf = _numeric_claim(claims, "nbf")
    if nbf is not None and nbf > current + leeway:
        raise InvalidToken("token not yet valid")

    identity = claims.get("id", claims.get("sub"))
    if isinstance(identity, bool) or not isinstance(identity, (str, int)) or identity == "":
        raise InvalidToken("token carries no identity")

    return Credential(identity=identity, claims=claims)


def encode_token(claims: Dict[str, Any], secret: str, *, algorithm: str = "HS256") -> str:
    """Sign ``claims`` into a compact JWT. Development and test use only."""
    if algorithm not in HMAC_ALGORITHMS:
        raise ValueError(f"unsupported algorithm: {algorithm}")
    header_b64 = b64url(orjson.dumps({"alg": algorithm, "typ": "JWT"}))
    payload_b64 = b64url(orjson.dumps(claims))
    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    signature = _signature(secret, algorithm, signing_input).finalize()
    return f"{header_b64}.{payload_b64}.{b64url(signature)}"


__all__ = ["Credential", "HMAC_ALGORITHMS", "verify", "encode_token"]
