from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from phoneguard_shared import is_e164, normalize_phone_e164

from .config import settings

OTP_CODE_PATTERN = re.compile(r"^\d{6}$")


def _valid_phone(v: str) -> str:
    normalized = normalize_phone_e164(v or "")
    if not is_e164(normalized):
        raise ValueError("Invalid phone number format. Must be E.164 format (e.g. +14155552671)")
    return normalized


class PhoneAuthIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(alias="phoneNumber")
    name: Optional[str] = Field(default=None, max_length=128)
    recaptcha_token: Optional[str] = Field(default=None, alias="recaptchaToken")

    @field_validator("phone_number")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        return _valid_phone(v)

    @model_validator(mode="after")
    def recaptcha_present(self) -> "PhoneAuthIn":
        if settings.REQUIRE_RECAPTCHA and not (self.recaptcha_token or "").strip():
            raise ValueError("reCAPTCHA token is required")
        return self


class VerifyOtpIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(alias="phoneNumber")
    otp_code: str = Field(alias="otpCode")
    verification_id: str = Field(alias="verificationId", min_length=1)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("phone_number")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        return _valid_phone(v)

    @field_validator("otp_code")
    @classmethod
    def valid_code(cls, v: str) -> str:
        v = (v or "").strip()
        if not OTP_CODE_PATTERN.match(v):
            raise ValueError("OTP must be exactly 6 digits")
        return v


class UnblockIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(alias="phoneNumber")

    @field_validator("phone_number")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        return _valid_phone(v)
