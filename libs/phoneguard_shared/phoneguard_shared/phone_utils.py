import re

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def normalize_phone_e164(phone: str) -> str:
    """Strip formatting so that only digits and a leading ``+`` remain.

    ``00`` international prefixes are rewritten to ``+``. The result is not
    guaranteed to be valid; pair with :func:`is_e164`.
    """
    if not phone:
        return ""
    raw = re.sub(r"[^\d+]", "", phone)
    if raw.startswith("00"):
        return "+" + raw[2:]
    return raw


def is_e164(phone: str) -> bool:
    return bool(phone) and E164_PATTERN.match(phone) is not None


def mask_phone(phone: str, visible_digits: int = 2) -> str:
    if not phone:
        return ""
    normalized = normalize_phone_e164(phone)
    if len(normalized) <= visible_digits:
        return normalized
    masked_portion = "*" * max(len(normalized) - visible_digits, 0)
    return masked_portion + normalized[-visible_digits:]


def mask_code(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]
