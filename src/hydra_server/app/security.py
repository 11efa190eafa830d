from __future__ import annotations

"""
Verified identity records and the HMAC-signed tokens that carry them.

Overview
- The SSO bridge authenticates the user against the identity provider and hands
  the orchestrator a compact, signed identity token. The orchestrator never talks
  to the identity provider itself.
- Tokens are URL-safe strings encoding a JSON payload and an HMAC-SHA256 signature.
- This is NOT a general JWT implementation; it is a minimal, purpose-built scheme.

Token format (string)
    v1.<base64url(payload_json)>.<base64url(signature_bytes)>

Where payload_json is a canonical JSON encoding of:
    {
      "v": 1,                        # version
      "sub": "<subject>",            # stable subject id from the IdP
      "email": "alice@example.edu",  # verified email
      "roles": ["student"],
      "groups": ["compsci-students"],
      "iat": <issued_at_epoch>,
      "exp": <expires_epoch>
    }

Usage
    token = issue_identity_token(secret="s3cret", identity=VerifiedIdentity(...), ttl_seconds=3600)
    identity = parse_and_verify_identity_token(secret="s3cret", token=token)
    identity.owner_key  # "alice"
"""

import base64
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple


# -----------------------
# Exceptions
# -----------------------

class InvalidTokenError(ValueError):
    """Raised when a token is malformed or fails signature validation."""


class TokenExpiredError(ValueError):
    """Raised when a token is validly signed but expired."""


# -----------------------
# Identity
# -----------------------

_OWNER_UNSAFE_RE = re.compile(r"[^a-z0-9-]")
_OWNER_DIGEST_LEN = 6


def owner_key_from_email(email: str) -> str:
    """
    Reduce an email to the owner key used in object names and labels:
    the local-part, lower-cased, with characters outside [a-z0-9-] mapped to '-'.

    When that mapping changed the local-part, a short digest of the original
    local-part is appended, so "john.doe" and "john_doe" get distinct keys
    ("john-doe-<hex>") and neither can take over the plain "john-doe".
    Returns "" when no usable local-part exists.
    """
    local = (email or "").split("@", 1)[0].strip().lower()
    key = _OWNER_UNSAFE_RE.sub("-", local).strip("-")
    if not key or key == local:
        return key
    digest = hashlib.sha256(local.encode("utf-8")).hexdigest()[:_OWNER_DIGEST_LEN]
    return f"{key}-{digest}"


@dataclass(frozen=True)
class VerifiedIdentity:
    """
    Identity already verified by the SSO bridge.
    """
    subject: str
    email: str
    roles: Tuple[str, ...] = field(default_factory=tuple)
    groups: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def owner_key(self) -> str:
        return owner_key_from_email(self.email)

    def has_any_role(self, allowed: Sequence[str]) -> bool:
        mine = {r.lower() for r in self.roles}
        return any(a.lower() in mine for a in allowed)


# -----------------------
# Internal helpers
# -----------------------

_TOKEN_VERSION = 1
_TOKEN_PREFIX = "v1"


def _b64u_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64u_decode(data_str: str) -> bytes:
    s = data_str.strip()
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _sign(secret: str, payload_bytes: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()


def _now_s() -> int:
    return int(time.time())


def _string_list(value: Any, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidTokenError(f"Payload field '{field_name}' must be a list of strings.")
    return tuple(value)


# -----------------------
# Public API: Token issue/verify
# -----------------------

def issue_identity_token(
    *,
    secret: str,
    identity: VerifiedIdentity,
    ttl_seconds: int = 3600,
    issued_at: Optional[int] = None,
) -> str:
    """
    Issue a signed identity token for a verified identity.

    Raises:
        ValueError: For an empty secret, missing email, or non-positive TTL.
    """
    if not secret:
        raise ValueError("A non-empty secret is required to issue tokens.")
    if not identity.email:
        raise ValueError("identity.email must be a non-empty string.")
    if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be a positive integer.")

    iat = int(issued_at if issued_at is not None else _now_s())
    payload = {
        "v": _TOKEN_VERSION,
        "sub": identity.subject,
        "email": identity.email,
        "roles": list(identity.roles),
        "groups": list(identity.groups),
        "iat": iat,
        "exp": iat + int(ttl_seconds),
    }
    payload_bytes = _canonical_json_bytes(payload)
    sig = _sign(secret, payload_bytes)
    return f"{_TOKEN_PREFIX}.{_b64u_encode(payload_bytes)}.{_b64u_encode(sig)}"


def parse_and_verify_identity_token(
    *,
    secret: str,
    token: str,
    now_s: Optional[int] = None,
) -> VerifiedIdentity:
    """
    Verify an identity token and return the identity it carries.

    Steps:
    - Parse token format: v1.<b64payload>.<b64sig>
    - Verify HMAC-SHA256 signature over payload bytes
    - Verify expiry (exp >= now)
    - Validate essential fields and types

    Raises:
        InvalidTokenError: For malformed tokens or signature mismatch.
        TokenExpiredError: For valid tokens that have expired.
    """
    if not isinstance(token, str) or "." not in token:
        raise InvalidTokenError("Malformed token.")
    parts = token.split(".")
    if len(parts) != 3 or parts[0] != _TOKEN_PREFIX:
        raise InvalidTokenError("Unsupported token format or version.")

    try:
        payload_bytes = _b64u_decode(parts[1])
        sig_bytes = _b64u_decode(parts[2])
    except (ValueError, TypeError) as e:
        raise InvalidTokenError(f"Invalid token encoding: {e}")

    if not hmac.compare_digest(_sign(secret, payload_bytes), sig_bytes):
        raise InvalidTokenError("Signature verification failed.")

    try:
        obj = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise InvalidTokenError("Payload is not valid JSON.")
    if not isinstance(obj, dict):
        raise InvalidTokenError("Payload structure is invalid.")
    if obj.get("v") != _TOKEN_VERSION:
        raise InvalidTokenError("Unsupported token version.")

    email = obj.get("email")
    iat = obj.get("iat")
    exp = obj.get("exp")
    if not isinstance(email, str) or "@" not in email:
        raise InvalidTokenError("Payload is missing a valid 'email'.")
    if not isinstance(iat, int) or not isinstance(exp, int):
        raise InvalidTokenError("Payload is missing valid 'iat'/'exp' timestamps.")

    now = int(now_s if now_s is not None else _now_s())
    if exp < now:
        raise TokenExpiredError("Token has expired.")

    return VerifiedIdentity(
        subject=str(obj.get("sub") or email),
        email=email,
        roles=_string_list(obj.get("roles"), "roles"),
        groups=_string_list(obj.get("groups"), "groups"),
    )


__all__ = [
    "VerifiedIdentity",
    "InvalidTokenError",
    "TokenExpiredError",
    "owner_key_from_email",
    "issue_identity_token",
    "parse_and_verify_identity_token",
]
