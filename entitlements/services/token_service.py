"""Bearer token validation (ES256), plus minting for dev and tests.

Access tokens are issued by the platform's identity provider.  When
JWT_PUBLIC_KEY_FILE points at its PEM public key, that key verifies every
request.  Without one, the service makes an ephemeral key pair on import
and can mint tokens for itself; production refuses to start that way.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from entitlements.core.config import SETTINGS

ALGORITHM = "ES256"
ACCESS_TOKEN_TTL_MIN = 15

REQUIRED_CLAIMS = ["sub", "exp", "iat", "jti"]


def _load_public_key(path: str) -> ec.EllipticCurvePublicKey:
    key = serialization.load_pem_public_key(Path(path).read_bytes())
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ValueError(f"JWT_PUBLIC_KEY_FILE must hold an EC public key ({path})")
    return key


if SETTINGS.jwt_public_key_file:
    _private_key: ec.EllipticCurvePrivateKey | None = None
    _public_key = _load_public_key(SETTINGS.jwt_public_key_file)
elif SETTINGS.is_prod:
    raise RuntimeError("JWT_PUBLIC_KEY_FILE is required in production")
else:
    _private_key = ec.generate_private_key(ec.SECP256R1())
    _public_key = _private_key.public_key()


def create_access_token(
    *,
    sub: str,
    roles: list[str] | None = None,
    email_verified: bool = False,
    ttl: timedelta = timedelta(minutes=ACCESS_TOKEN_TTL_MIN),
) -> str:
    """Sign a token the way the identity provider would.

    Only possible with the ephemeral key, i.e. in development and tests.
    """
    if _private_key is None:
        raise RuntimeError("Tokens are minted by the identity provider in this deployment")
    now = datetime.now(UTC)
    payload = {
        "sub": sub,
        "iss": SETTINGS.jwt_issuer,
        "aud": SETTINGS.jwt_audience,
        "exp": now + ttl,
        "iat": now,
        "jti": str(uuid.uuid4()),
        "roles": roles or ["user"],
        "email_verified": email_verified,
    }
    return jwt.encode(payload, _private_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature, issuer, audience and expiry; return the claims.

    Raises jwt.ExpiredSignatureError or jwt.InvalidTokenError.
    """
    return jwt.decode(
        token,
        _public_key,
        algorithms=[ALGORITHM],
        issuer=SETTINGS.jwt_issuer,
        audience=SETTINGS.jwt_audience,
        options={"require": REQUIRED_CLAIMS},
    )
