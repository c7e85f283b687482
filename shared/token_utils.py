"""
Access Token Utilities

HMAC-SHA256 signed, stateless bearer tokens for API authentication.
Token format: "<user_id>.<role>.<expires_epoch>.<hex signature>"
Uses stdlib only - no external crypto libraries.
"""

from __future__ import annotations

import hmac
import hashlib
import time
from datetime import datetime, timezone
from typing import Dict, Optional


def sign_token(user_id: int, role: str, expires_epoch: int, secret_key: str) -> str:
    """
    Sign access token claims with HMAC-SHA256.

    Args:
        user_id: Authenticated user ID
        role: User role at issue time
        expires_epoch: Expiry as UNIX timestamp (seconds)
        secret_key: Service signing secret

    Returns:
        Hex-encoded HMAC-SHA256 signature (64 hex chars)
    """
    message = f"{user_id}|{role}|{expires_epoch}".encode()
    return hmac.new(secret_key.encode(), message, hashlib.sha256).hexdigest()


def issue_token(user_id: int, role: str, secret_key: str, ttl_seconds: int = 3600) -> Dict:
    """
    Issue a signed access token.

    Returns:
        Dict with access_token, token_type and ISO expires_at
    """
    expires_epoch = int(time.time()) + int(ttl_seconds)
    signature = sign_token(user_id, role, expires_epoch, secret_key)
    return {
        "access_token": f"{user_id}.{role}.{expires_epoch}.{signature}",
        "token_type": "bearer",
        "expires_at": datetime.fromtimestamp(expires_epoch, tz=timezone.utc).isoformat(),
    }


def parse_token(token: str) -> Dict:
    """
    Split a token string into its claims.

    Raises:
        ValueError: If the token is malformed
    """
    parts = (token or "").split(".")
    if len(parts) != 4:
        raise ValueError("Malformed access token")

    user_id_raw, role, expires_raw, signature = parts
    try:
        user_id = int(user_id_raw)
        expires_epoch = int(expires_raw)
    except ValueError:
        raise ValueError("Malformed access token claims")

    if not role or not signature:
        raise ValueError("Malformed access token")

    return {"user_id": user_id, "role": role, "expires_epoch": expires_epoch, "signature": signature}


def verify_token(token: str, secret_key: str, now: Optional[float] = None) -> tuple[bool, Optional[Dict], Optional[str]]:
    """
    Verify an access token.

    Checks:
    1. Token well-formed
    2. Signature valid
    3. Token not expired

    Returns:
        (is_valid, claims, error_message)
    """
    try:
        claims = parse_token(token)
    except ValueError as e:
        return False, None, str(e)

    expected = sign_token(claims["user_id"], claims["role"], claims["expires_epoch"], secret_key)

    # Use hmac.compare_digest to prevent timing attacks
    if not hmac.compare_digest(claims["signature"], expected):
        return False, None, "Invalid token signature"

    current = time.time() if now is None else now
    if current > claims["expires_epoch"]:
        return False, None, "Token expired"

    return True, claims, None
