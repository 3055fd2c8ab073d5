from .env import env_bool, env_int, env_list
from .env_loader import ensure_loaded as ensure_env_loaded
from .otp import generate_otp_code, codes_match, new_verification_id, build_client_fingerprint
from .phone_utils import E164_PATTERN, normalize_phone_e164, is_e164, mask_phone, mask_code
from .sms_provider import (
    SmsBackend,
    SmsDeliveryError,
    LogBackend,
    HttpBackend,
    resolve_backend,
    build_message,
)

__all__ = [
    "env_bool",
    "env_int",
    "env_list",
    "ensure_env_loaded",
    "generate_otp_code",
    "codes_match",
    "new_verification_id",
    "build_client_fingerprint",
    "E164_PATTERN",
    "normalize_phone_e164",
    "is_e164",
    "mask_phone",
    "mask_code",
    "SmsBackend",
    "SmsDeliveryError",
    "LogBackend",
    "HttpBackend",
    "resolve_backend",
    "build_message",
]
