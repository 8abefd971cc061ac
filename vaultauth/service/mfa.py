from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import List, Optional
from urllib.parse import quote, urlencode

from vaultauth.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_COUNT = 10


def generate_totp_secret() -> str:
    """Random 160-bit base32 secret without padding."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
    now: Optional[float] = None,
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    if not code or not code.isdigit():
        return False
    timestamp = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def generate_delivered_code(digits: int = TOTP_DIGITS) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


def hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode()).hexdigest()


def verify_code_hash(code: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_code(code), expected_hash)


def normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    """Return ``count`` codes formatted ``XXXX-XXXX``."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def hash_backup_code(code: str) -> str:
    return hash_code(normalize_backup_code(code))
