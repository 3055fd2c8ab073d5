from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from phoneguard_shared import mask_phone

from .blocking import BlockRecordView, BlockService
from .clock import Clock, SystemClock
from .database import SessionFactory, SessionLocal, dialect_insert, session_scope
from .errors import (
    AppError,
    InternalError,
    OtpAttemptsExceeded,
    OtpMismatch,
    SuspiciousActivity,
    failure_body,
)
from .fraud import IP, DeviceInfo, SuspiciousActivityDetector
from .metrics import OTP_ISSUED, OTP_VERIFY
from .models import User, default_uuid
from .otp_ledger import OTPLedger
from .sms_provider import CodeDelivery

logger = logging.getLogger("phoneguard.auth")


@dataclass
class AuthResult:
    success: bool
    message: str
    data: Optional[dict] = None
    error: Optional[AppError] = None

    @classmethod
    def ok(cls, message: str, data: Optional[dict] = None) -> "AuthResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error: AppError) -> "AuthResult":
        return cls(success=False, message=error.message, error=error)

    @property
    def status_code(self) -> int:
        return 200 if self.success else self.error.status_code

    def to_body(self) -> dict:
        if not self.success:
            return failure_body(self.message, self.error.error_body(), self.data)
        body: dict = {"success": True, "message": self.message}
        if self.data is not None:
            body["data"] = self.data
        return body


def _user_dict(user: User) -> dict:
    return {
        "id": str(user.id),
        "phoneNumber": user.phone,
        "name": user.name,
        "role": user.role,
        "isVerified": user.is_verified,
        "lastLogin": user.last_login.isoformat() if user.last_login else None,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


class PhoneAuthService:
    """Runs the phone OTP flow through every abuse-control layer.

    Expected failures come back as an :class:`AuthResult` carrying the
    matching :class:`AppError`; anything else a collaborator raises (database,
    redis, SMS gateway) is logged and reported as ``InternalError``.
    """

    def __init__(
        self,
        ledger: OTPLedger,
        blocks: BlockService,
        detector: SuspiciousActivityDetector,
        delivery: CodeDelivery,
        issuer,
        session_factory: SessionFactory = SessionLocal,
        clock: Optional[Clock] = None,
        dev_echo: bool = False,
        expose_errors: bool = False,
    ):
        self.ledger = ledger
        self.blocks = blocks
        self.detector = detector
        self.delivery = delivery
        self.issuer = issuer
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.dev_echo = dev_echo
        self.expose_errors = expose_errors

    def _internal(self, message: str, exc: Exception) -> AuthResult:
        logger.error("%s: %s", message, exc, exc_info=exc)
        if self.expose_errors:
            return AuthResult.fail(InternalError(message, detail=f"{type(exc).__name__}: {exc}"))
        return AuthResult.fail(InternalError(message))

    def initiate_phone_auth(self, phone: str, device: Optional[DeviceInfo] = None) -> AuthResult:
        device = device or DeviceInfo()
        issued = None
        try:
            self.detector.note_device(phone, device)
            if self.detector.is_suspicious(phone):
                self.detector.log_failed_attempt(device.ip or "unknown", IP, "Suspicious activity detected")
                raise SuspiciousActivity()

            check = self.blocks.check_blocked(phone)
            if not check.allowed:
                raise check.to_error()

            issued = self.ledger.issue(phone)
            self.blocks.record_attempt(phone)
            self.delivery.deliver(phone, issued.code)
        except AppError as exc:
            logger.info("Initiate for %s refused: %s", mask_phone(phone), exc.code)
            return AuthResult.fail(exc)
        except Exception as exc:
            if issued is not None:
                self.ledger.discard(phone)
            return self._internal("Failed to initiate phone authentication", exc)

        OTP_ISSUED.inc()
        data = {"verificationId": issued.verification_id, "expiresIn": issued.expires_in}
        if self.dev_echo:
            data["devCode"] = issued.code
        return AuthResult.ok("OTP sent successfully", data)

    def verify_otp(
        self,
        phone: str,
        code: str,
        verification_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> AuthResult:
        try:
            check = self.blocks.check_blocked(phone)
            if not check.allowed:
                raise check.to_error()
            try:
                self.ledger.verify(phone, code, verification_id)
            except (OtpMismatch, OtpAttemptsExceeded):
                self.blocks.record_attempt(phone)
                raise
            user = self._upsert_verified_user(phone, name)
            token = self.issuer.issue({"sub": user["id"], "phone": phone})
        except AppError as exc:
            OTP_VERIFY.labels(exc.code).inc()
            logger.info("Verify for %s failed: %s", mask_phone(phone), exc.code)
            return AuthResult.fail(exc)
        except Exception as exc:
            OTP_VERIFY.labels("internal_error").inc()
            return self._internal("Failed to verify OTP", exc)

        OTP_VERIFY.labels("success").inc()
        return AuthResult.ok("Authentication successful", {"token": token, "user": user})

    def _upsert_verified_user(self, phone: str, name: Optional[str]) -> dict:
        now = self.clock.now()
        table = User.__table__
        on_conflict = {"is_verified": True, "last_login": now, "updated_at": now}
        if name:
            on_conflict["name"] = name
        with session_scope(self.session_factory) as db:
            db.execute(
                dialect_insert(db, table)
                .values(
                    id=default_uuid(),
                    phone=phone,
                    name=name or None,
                    role="customer",
                    is_verified=True,
                    last_login=now,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_update(index_elements=["phone"], set_=on_conflict)
            )
            user = db.query(User).filter(User.phone == phone).one()
            return _user_dict(user)

    def unblock(self, phone: str) -> bool:
        return self.blocks.unblock(phone)

    def list_blocked(self) -> List[BlockRecordView]:
        return self.blocks.list_blocked()
