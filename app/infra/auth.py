from __future__ import annotations

from typing import Any

import jwt

PORTAL_AUDIENCE = "customer-portal"


def decode_portal_token(token: str, secret: str) -> dict[str, Any]:
    """Verify a portal bearer token minted by the portal's own login flow."""

    return jwt.decode(token, secret, algorithms=["HS256"], audience=PORTAL_AUDIENCE)
