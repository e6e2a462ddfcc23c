"""Compact HS256 execution lease tokens.

The format is deliberately narrow: a fixed ``{"alg": "HS256", "typ": "JWT"}``
header, a JSON object payload and an unpadded URL-safe base64 HMAC-SHA256
signature over ``header.payload``. Nothing else from JOSE is supported.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
from typing import Any

from leasekeeper.core import clock
from leasekeeper.core.errors import LicenseError


TOKEN_ALGORITHM = "HS256"
_HEADER = {"alg": TOKEN_ALGORITHM, "typ": "JWT"}


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _json_segment(value: dict[str, Any]) -> str:
    # Compact separators keep tokens short and byte-identical across signers.
    return _b64url_encode(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def _unauthorized(message: str) -> LicenseError:
    return LicenseError(401, "UNAUTHORIZED", message)


class LeaseTokenCodec:
    def __init__(self, secret: str | None) -> None:
        normalized = (secret or "").strip()
        if not normalized:
            raise LicenseError(500, "CONFIG_ERROR", "LICENSE_LEASE_SECRET is not configured")
        self._key = normalized.encode("utf-8")

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def sign(self, payload: dict[str, Any]) -> str:
        signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str | None) -> dict[str, Any]:
        normalized = (token or "").strip()
        if not normalized:
            raise _unauthorized("lease_token is required")

        parts = normalized.split(".")
        if len(parts) != 3:
            raise _unauthorized("Invalid lease token format")
        encoded_header, encoded_payload, encoded_signature = parts

        try:
            expected = self._signature(f"{encoded_header}.{encoded_payload}")
        except UnicodeEncodeError as exc:
            raise _unauthorized("Invalid lease token signature") from exc
        # Constant-time comparison; a plain == would leak the matching prefix length.
        if not hmac.compare_digest(expected.encode("ascii"), encoded_signature.encode("utf-8")):
            raise _unauthorized("Invalid lease token signature")

        try:
            header = json.loads(_b64url_decode(encoded_header))
            payload = json.loads(_b64url_decode(encoded_payload))
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise _unauthorized("Invalid lease token payload") from exc
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise _unauthorized("Invalid lease token payload")

        if str(header.get("alg") or "").upper() != TOKEN_ALGORITHM:
            raise _unauthorized("Unsupported lease token algorithm")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not math.isfinite(exp):
            raise _unauthorized("Lease token has no valid exp claim")
        # Expiry is distinct from forgery: a well-signed stale token is a 409, not a 401.
        if exp <= clock.now_seconds():
            raise LicenseError(409, "LEASE_EXPIRED", "Execution lease token is expired")
        return payload
