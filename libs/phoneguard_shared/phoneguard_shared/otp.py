import hashlib
import secrets
from typing import Optional

OTP_DIGITS = 6


def generate_otp_code(digits: int = OTP_DIGITS) -> str:
    """Uniformly random numeric code, zero-padded to ``digits``."""
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def codes_match(expected: str, supplied: str) -> bool:
    return secrets.compare_digest((expected or "").encode(), (supplied or "").strip().encode())


def new_verification_id() -> str:
    return secrets.token_urlsafe(16)


def build_client_fingerprint(ip: Optional[str], user_agent: Optional[str], extra: Optional[str] = None) -> str:
    material = "|".join([ip or "", user_agent or "", extra or ""]).encode()
    return hashlib.sha256(material).hexdigest()
