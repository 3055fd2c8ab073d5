import logging
from typing import Optional

from phoneguard_shared import SmsBackend, build_message, mask_phone, resolve_backend

from .config import settings

logger = logging.getLogger("phoneguard.sms")


class CodeDelivery:
    """Sends OTP codes through the configured SMS backend."""

    def __init__(self, backend: SmsBackend, template: Optional[str] = None):
        self.backend = backend
        self.template = template

    def deliver(self, phone: str, code: str) -> None:
        self.backend.send(phone, build_message(code, self.template))
        logger.info("OTP delivered to %s via %s", mask_phone(phone), type(self.backend).__name__)


def build_code_delivery() -> CodeDelivery:
    backend = resolve_backend(
        settings.OTP_SMS_PROVIDER,
        http_url=settings.OTP_SMS_HTTP_URL,
        http_auth_token=settings.OTP_SMS_HTTP_AUTH_TOKEN,
        sender_name=settings.OTP_SMS_SENDER_NAME,
        timeout_secs=settings.OTP_SMS_TIMEOUT_SECS,
    )
    return CodeDelivery(backend, settings.OTP_SMS_TEMPLATE)
