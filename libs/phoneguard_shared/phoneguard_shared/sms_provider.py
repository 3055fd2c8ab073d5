from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import time
from typing import Callable, Optional, Protocol

import httpx

from .phone_utils import normalize_phone_e164, mask_phone, mask_code

logger = logging.getLogger("phoneguard.sms")

DEFAULT_TEMPLATE = "Your verification code is {code}"


class SmsDeliveryError(RuntimeError):
    """Raised when a backend gives up on delivering a message."""


class SmsBackend(Protocol):
    def send(self, phone: str, message: str) -> None:  # pragma: no cover - interface
        ...


@dataclass
class LogBackend:
    """Development backend: writes a masked copy of the message to the log."""

    def send(self, phone: str, message: str) -> None:
        logger.info("SMS log backend to=%s msg=%s", mask_phone(phone), mask_code_in_message(message))


@dataclass
class HttpBackend:
    url: str
    auth_token: Optional[str] = None
    sender_name: Optional[str] = None
    timeout_secs: float = 5.0
    max_attempts: int = 3

    def send(self, phone: str, message: str) -> None:
        if not (self.url or "").strip():
            raise SmsDeliveryError("SMS URL must be configured for HTTP provider")
        payload = {"to": normalize_phone_e164(phone), "message": message}
        if self.sender_name:
            payload["sender"] = self.sender_name
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        send_with_retry(
            lambda: httpx.post(self.url, json=payload, headers=headers, timeout=self.timeout_secs),
            backend_name="http",
            max_attempts=self.max_attempts,
        )


def resolve_backend(
    provider: str,
    *,
    http_url: str = "",
    http_auth_token: str | None = None,
    sender_name: str | None = None,
    timeout_secs: float = 5.0,
) -> SmsBackend:
    name = (provider or "log").strip().lower()
    if name == "log":
        return LogBackend()
    if name == "http":
        return HttpBackend(
            url=http_url,
            auth_token=http_auth_token or None,
            sender_name=sender_name or None,
            timeout_secs=timeout_secs,
        )
    raise ValueError(f"Unsupported SMS provider {provider!r}")


def build_message(code: str, template: str | None = None) -> str:
    tmpl = template or DEFAULT_TEMPLATE
    try:
        return tmpl.format(code=code)
    except (KeyError, IndexError, ValueError):
        return DEFAULT_TEMPLATE.format(code=code)


def mask_code_in_message(message: str) -> str:
    if not message:
        return ""
    return re.sub(r"(\d{2,})", lambda m: mask_code(m.group(0)), message)


def send_with_retry(
    callable_fn: Callable[[], httpx.Response],
    backend_name: str,
    validator: Callable[[httpx.Response], None] | None = None,
    max_attempts: int = 3,
    delay: float = 0.5,
) -> None:
    """Call ``callable_fn`` until it succeeds, backing off exponentially.

    Retrying lives here in the adapter; callers only see success or a final
    :class:`SmsDeliveryError`.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            res = callable_fn()
            try:
                if validator:
                    validator(res)
                else:
                    res.raise_for_status()
                return
            finally:
                res.close()
        except (httpx.HTTPError, SmsDeliveryError) as exc:
            if attempt == max_attempts:
                raise SmsDeliveryError(f"{backend_name} SMS delivery failed: {exc}") from exc
            logger.warning("%s SMS attempt %s failed: %s", backend_name, attempt, exc)
            time.sleep(delay)
            delay *= 2
