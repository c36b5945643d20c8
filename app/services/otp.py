from __future__ import annotations

import hashlib
import hmac
import secrets

from app.settings import get_settings

OTP_DIGITS = 6


def generate_otp_code(digits: int = OTP_DIGITS) -> str:
    # secrets.randbelow draws from the OS CSPRNG; zero-padding keeps 000000-999999 uniform.
    return str(secrets.randbelow(10**digits)).zfill(digits)


def _normalize_code(code: str | None) -> str:
    return (code or "").strip()


def _digest_key() -> bytes:
    settings = get_settings()
    material = (settings.jwt_secret or "").strip() or "dev-otp-digest-key"
    return material.encode("utf-8")


def digest_code(code: str) -> str:
    normalized = _normalize_code(code)
    return hmac.new(_digest_key(), normalized.encode("utf-8"), hashlib.sha256).hexdigest()


def code_matches(submitted_code: str | None, code_digest: str) -> bool:
    normalized = _normalize_code(submitted_code)
    if len(normalized) != OTP_DIGITS or not (normalized.isascii() and normalized.isdigit()):
        return False
    return hmac.compare_digest(digest_code(normalized), code_digest)
