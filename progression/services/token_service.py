"""Validation of access tokens issued by the identity provider (ES256).

This service authenticates nobody.  It only verifies the bearer JWT the
identity provider signed and reads two claims from it: ``sub`` (the user
id that keys every profile, grant and progress row) and ``roles``
(``admin`` gates the administrative endpoints).

Key material:
  - JWT_PUBLIC_KEY set  → verify with the provider's PEM public key
  - unset (dev/test)    → an ephemeral key pair generated on import, so
                          create_access_token can mint tokens locally
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from progression.core.config import SETTINGS

ALGORITHM = "ES256"
ISSUER = "identity-provider"
AUDIENCE = "progression-service"
ACCESS_TOKEN_TTL_MIN = 15

_private_key = ec.generate_private_key(ec.SECP256R1())
if SETTINGS.jwt_public_key:
    _public_key = serialization.load_pem_public_key(
        SETTINGS.jwt_public_key.encode()
    )
else:
    _public_key = _private_key.public_key()


def create_access_token(
    *,
    sub: str,
    roles: list[str] | None = None,
    ttl_minutes: int = ACCESS_TOKEN_TTL_MIN,
) -> str:
    """Mint a token with the local key.  For dev tooling and tests only."""
    now = datetime.now(UTC)
    payload = {
        "sub": sub,
        "iss": ISSUER,
        "aud": AUDIENCE,
        "exp": now + timedelta(minutes=ttl_minutes),
        "iat": now,
        "jti": str(uuid.uuid4()),
        "roles": roles or ["user"],
    }
    return jwt.encode(payload, _private_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature and claims, return the payload.

    The algorithm is pinned to ES256.  Raises jwt.ExpiredSignatureError or
    jwt.InvalidTokenError on failure.
    """
    return jwt.decode(
        token,
        _public_key,
        algorithms=[ALGORITHM],
        issuer=ISSUER,
        audience=AUDIENCE,
        options={"require": ["sub", "exp", "iat"]},
    )
