import hashlib
import secrets
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from .clock import Clock, SystemClock, utc_epoch
from .config import settings


class JwtTokenIssuer:
    """Signs HS256 access tokens for verified phone numbers."""

    def __init__(self, secret: str, expires_delta, clock: Optional[Clock] = None, algorithm: str = "HS256"):
        self.secret = secret
        self.expires_delta = expires_delta
        self.clock = clock or SystemClock()
        self.algorithm = algorithm

    def issue(self, claims: dict) -> str:
        now = self.clock.now()
        payload = dict(claims)
        payload["iat"] = utc_epoch(now)
        payload["exp"] = utc_epoch(now + self.expires_delta)
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)


def decode_access_token(token: str, secret: Optional[str] = None, verify_exp: bool = True) -> dict:
    try:
        return jwt.decode(
            token,
            secret or settings.JWT_SECRET,
            algorithms=["HS256"],
            options={"require": ["exp", "iat", "sub"], "verify_exp": verify_exp},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def require_admin(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    incoming = x_admin_token or ""
    if not incoming:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")
    for candidate in [t.strip() for t in (settings.ADMIN_TOKEN or "").split(",") if t.strip()]:
        if secrets.compare_digest(incoming, candidate):
            return
    digest = hashlib.sha256(incoming.encode()).hexdigest().lower()
    for h in settings.admin_token_hashes:
        if secrets.compare_digest(digest, h):
            return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token invalid")
