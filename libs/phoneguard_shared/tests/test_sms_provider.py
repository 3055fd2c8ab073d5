import httpx
import pytest

from phoneguard_shared import HttpBackend, LogBackend, SmsDeliveryError, build_message, resolve_backend
from phoneguard_shared import sms_provider


def test_resolve_backend():
    assert isinstance(resolve_backend("log"), LogBackend)
    backend = resolve_backend("http", http_url="https://sms.example/send", sender_name="Guard")
    assert isinstance(backend, HttpBackend)
    assert backend.sender_name == "Guard"
    with pytest.raises(ValueError):
        resolve_backend("pigeon")


def test_build_message_falls_back_on_bad_template():
    assert build_message("123456", "Code: {code}") == "Code: 123456"
    assert build_message("123456", "Broken {nope}") == "Your verification code is 123456"


def test_http_backend_posts_payload(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json, headers))
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    HttpBackend(url="https://sms.example/send", auth_token="tok").send("+1 415 555 2671", "hi")
    url, payload, headers = calls[0]
    assert payload == {"to": "+14155552671", "message": "hi"}
    assert headers["Authorization"] == "Bearer tok"


def test_http_backend_retries_then_gives_up(monkeypatch):
    attempts = []

    def failing_post(url, json=None, headers=None, timeout=None):
        attempts.append(url)
        return httpx.Response(503, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", failing_post)
    monkeypatch.setattr(sms_provider.time, "sleep", lambda _: None)
    with pytest.raises(SmsDeliveryError):
        HttpBackend(url="https://sms.example/send", max_attempts=3).send("+14155552671", "hi")
    assert len(attempts) == 3


def test_http_backend_requires_url():
    with pytest.raises(SmsDeliveryError):
        HttpBackend(url="").send("+14155552671", "hi")
