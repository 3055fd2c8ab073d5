from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from phoneguard_shared import codes_match, generate_otp_code, mask_phone, new_verification_id

from .clock import Clock, SystemClock, seconds_until
from .errors import OtpAlreadyActive, OtpAttemptsExceeded, OtpExpired, OtpMismatch, OtpNotFound

logger = logging.getLogger("phoneguard.otp")


@dataclass
class OTPRecord:
    code: str
    expires_at: datetime
    verification_id: str
    verify_attempts: int = 0


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    expires_in: int
    verification_id: str


class OTPLedger:
    """Process-local store of the live code per phone number.

    A record is void once ``expires_at`` has passed, whether or not
    :meth:`sweep` has removed it yet. Every read-modify-write runs under a
    single lock, so concurrent verifies of one phone see each other's
    attempt increments.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        ttl_secs: int = 300,
        max_attempts: int = 3,
        code_factory: Callable[[], str] = generate_otp_code,
    ):
        self.clock = clock or SystemClock()
        self.ttl = timedelta(seconds=ttl_secs)
        self.max_attempts = max_attempts
        self._code_factory = code_factory
        self._records: Dict[str, OTPRecord] = {}
        self._lock = threading.Lock()

    def issue(self, phone: str) -> IssuedCode:
        with self._lock:
            now = self.clock.now()
            existing = self._records.get(phone)
            if existing is not None and existing.expires_at > now:
                raise OtpAlreadyActive(seconds_until(existing.expires_at, now))
            record = OTPRecord(
                code=self._code_factory(),
                expires_at=now + self.ttl,
                verification_id=new_verification_id(),
            )
            self._records[phone] = record
        logger.info("OTP issued for %s", mask_phone(phone))
        return IssuedCode(
            code=record.code,
            expires_at=record.expires_at,
            expires_in=int(self.ttl.total_seconds()),
            verification_id=record.verification_id,
        )

    def verify(self, phone: str, code: str, verification_id: Optional[str] = None) -> None:
        """Consume the live code for ``phone`` or raise the matching OTP error."""
        with self._lock:
            record = self._records.get(phone)
            if record is None:
                raise OtpNotFound()
            if verification_id and verification_id != record.verification_id:
                raise OtpNotFound()
            if self.clock.now() > record.expires_at:
                del self._records[phone]
                raise OtpExpired()
            record.verify_attempts += 1
            if record.verify_attempts > self.max_attempts:
                del self._records[phone]
                logger.warning("OTP attempts exceeded for %s", mask_phone(phone))
                raise OtpAttemptsExceeded()
            if not codes_match(record.code, code):
                raise OtpMismatch(self.max_attempts - record.verify_attempts)
            del self._records[phone]
        logger.info("OTP verified for %s", mask_phone(phone))

    def discard(self, phone: str) -> bool:
        with self._lock:
            return self._records.pop(phone, None) is not None

    def get(self, phone: str) -> Optional[OTPRecord]:
        with self._lock:
            record = self._records.get(phone)
            return replace(record) if record is not None else None

    def sweep(self) -> int:
        with self._lock:
            now = self.clock.now()
            expired = [phone for phone, rec in self._records.items() if rec.expires_at < now]
            for phone in expired:
                del self._records[phone]
        if expired:
            logger.debug("Swept %d expired OTP records", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
