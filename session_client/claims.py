"""
Claim inspection for the Session Sync Client.

Pure functions that extract and type-normalize claims from the current token
and compute its remaining validity.
"""

import logging
import math
import time
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from jose import jwt, JWTError

from session_shared.models import Claim, ExpiryInfo
from session_shared.exceptions import ClaimNotFound, ClaimTypeMismatch

logger = logging.getLogger(__name__)

NEAR_EXPIRY_THRESHOLD_SECONDS = 300

# Declared types of the well-known claims; other claims pass through as-is.
EXPECTED_TYPES: Dict[str, Tuple[type, ...]] = {
    'exp': (int,),
    'iat': (int,),
    'nbf': (int,),
    'auth_time': (int,),
    'sub': (str,),
    'iss': (str,),
    'azp': (str,),
    'jti': (str,),
    'email': (str,),
    'given_name': (str,),
    'family_name': (str,),
    'org_code': (str,),
    'scp': (str, list),
    'aud': (str, list),
    'email_verified': (bool,),
}


def _to_epoch_seconds(value: Any) -> Optional[float]:
    """Parse an int, float, numeric string or numeric bytes value."""
    if isinstance(value, bool):
        return None
    if isinstance(value, bytes):
        try:
            value = value.decode('ascii')
        except UnicodeDecodeError:
            return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def compute_expiry(claims: Dict[str, Any], now_millis: Optional[int] = None) -> Optional[ExpiryInfo]:
    """
    Compute token freshness from the `exp` claim.

    Args:
        claims: Claim mapping of the current token
        now_millis: Current epoch time in milliseconds (defaults to the wall clock)

    Returns:
        ExpiryInfo, or None if `exp` is absent or unparsable
    """
    exp = _to_epoch_seconds((claims or {}).get('exp'))
    if exp is None:
        return None

    if now_millis is None:
        now_millis = int(time.time() * 1000)

    expires_at_millis = int(exp * 1000)
    remaining_seconds = math.floor((expires_at_millis - now_millis) / 1000)

    return ExpiryInfo(
        expires_at_millis=expires_at_millis,
        remaining_seconds=remaining_seconds,
        is_near_expiry=remaining_seconds < NEAR_EXPIRY_THRESHOLD_SECONDS
    )


def decode_claims(token: Optional[str]) -> Dict[str, Any]:
    """
    Read the claims of a JWT without verifying it.

    Opaque (non-JWT) tokens have no readable claims and yield an empty mapping.
    """
    if not token:
        return {}

    try:
        return dict(jwt.get_unverified_claims(token))
    except JWTError as e:
        logger.debug(f"Token carries no readable claims: {e}")
        return {}


def _normalize(expected: type, value: Any) -> Any:
    if expected is int:
        if isinstance(value, bool):
            raise ValueError("boolean is not an integer")
        if isinstance(value, int):
            return value
        seconds = _to_epoch_seconds(value)
        if seconds is None:
            raise ValueError(f"not numeric: {value!r}")
        return int(seconds)

    if expected is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ('true', 'false'):
            return value.lower() == 'true'
        raise ValueError(f"not a boolean: {value!r}")

    if expected is str:
        if isinstance(value, bytes):
            return value.decode('utf-8')
        if isinstance(value, str):
            return value
        raise ValueError(f"not a string: {value!r}")

    if isinstance(value, expected):
        return value
    raise ValueError(f"not a {expected.__name__}: {value!r}")


def normalize_claim(name: str, value: Any) -> Claim:
    """
    Coerce a raw claim value to its declared type.

    Raises:
        ClaimTypeMismatch: If the value cannot be coerced
    """
    expected_types = EXPECTED_TYPES.get(name)
    if expected_types is None:
        return Claim(name=name, value=value)

    for expected in expected_types:
        try:
            return Claim(name=name, value=_normalize(expected, value))
        except (ValueError, UnicodeDecodeError):
            continue

    expected_names = ' or '.join(t.__name__ for t in expected_types)
    raise ClaimTypeMismatch(name, expected_names, value)


def get_claim(claims: Dict[str, Any], name: str) -> Claim:
    """
    Look up and normalize a claim.

    Raises:
        ClaimNotFound: If the claim is absent
        ClaimTypeMismatch: If the value cannot be normalized
    """
    if not claims or name not in claims or claims[name] is None:
        raise ClaimNotFound(name)
    return normalize_claim(name, claims[name])


def token_tail(token: Optional[str], length: int = 30) -> str:
    """Last characters of a token, safe to show to a user."""
    if not token:
        return ""
    return token[-length:]


def format_expiry_report(expiry: Optional[ExpiryInfo], now: Optional[datetime] = None) -> str:
    """Human readable token expiry block."""
    if expiry is None:
        return "Token expiry unavailable"

    now = now or datetime.now()
    expires_at = datetime.fromtimestamp(expiry.expires_at_millis / 1000)
    remaining = expiry.remaining_seconds

    lines = [
        f"Current Time: {now:%Y-%m-%d %H:%M:%S}",
        f"Expires At: {expires_at:%Y-%m-%d %H:%M:%S}",
        f"Time Until Expiry: {remaining}s ({remaining // 60}m)",
    ]
    if remaining <= 0:
        lines.append("Token has expired")
    elif expiry.is_near_expiry:
        lines.append("Token expires soon")
    return "\n".join(lines)
