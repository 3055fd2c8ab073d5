import pytest
from fastapi import HTTPException
from sqlalchemy.exc import OperationalError

from app.auth import decode_access_token
from app.fraud import IP, PHONE, DeviceInfo


PHONE_NUMBER = "+14155552671"
DEVICE = DeviceInfo(user_agent="pytest-agent", ip="10.0.0.1")


def _initiate(service, phone=PHONE_NUMBER, device=DEVICE):
    return service.initiate_phone_auth(phone, device)


def test_initiate_sends_code_and_returns_handle(service, sms):
    result = _initiate(service)
    assert result.success is True
    assert result.status_code == 200
    assert result.message == "OTP sent successfully"
    assert result.data["expiresIn"] == 300
    assert result.data["verificationId"]
    assert "devCode" not in result.data
    assert sms.sent[0][0] == PHONE_NUMBER
    assert service.blocks.get(PHONE_NUMBER).daily_attempts == 1


def test_full_flow_issues_token_and_user(service, sms):
    handle = _initiate(service).data["verificationId"]
    result = service.verify_otp(PHONE_NUMBER, sms.last_code(), handle, name="Alex")
    assert result.success is True
    assert result.message == "Authentication successful"
    user = result.data["user"]
    assert user["phoneNumber"] == PHONE_NUMBER
    assert user["isVerified"] is True
    assert user["name"] == "Alex"
    claims = decode_access_token(result.data["token"], verify_exp=False)
    assert claims["sub"] == user["id"]
    assert claims["phone"] == PHONE_NUMBER
    assert claims["exp"] - claims["iat"] == 7 * 24 * 60 * 60

    again = service.verify_otp(PHONE_NUMBER, sms.last_code(), handle)
    assert again.success is False
    assert again.error.code == "otp_not_found"
    assert again.status_code == 400


def test_second_login_updates_existing_user(service, sms, clock):
    handle = _initiate(service).data["verificationId"]
    first = service.verify_otp(PHONE_NUMBER, sms.last_code(), handle, name="Alex").data["user"]

    clock.advance(hours=1)
    handle = _initiate(service).data["verificationId"]
    second = service.verify_otp(PHONE_NUMBER, sms.last_code(), handle).data["user"]
    assert second["id"] == first["id"]
    assert second["name"] == "Alex"
    assert second["lastLogin"] == clock.now().isoformat()


def test_second_initiate_reports_wait(service, clock):
    _initiate(service)
    clock.advance(10)
    result = _initiate(service)
    assert result.success is False
    assert result.status_code == 429
    assert result.message == "Please wait 290 seconds before requesting new OTP"
    assert result.to_body()["error"] == {"code": "otp_already_active", "remainingSeconds": 290}


def test_expired_code_after_301_seconds(service, sms, clock):
    handle = _initiate(service, "+14155550000").data["verificationId"]
    clock.advance(301)
    result = service.verify_otp("+14155550000", sms.last_code(), handle)
    assert result.error.code == "otp_expired"
    assert result.message == "OTP expired. Please request new OTP."


def test_wrong_codes_count_toward_daily_ceiling(service, sms):
    handle = _initiate(service).data["verificationId"]
    wrong = "000000" if sms.last_code() != "000000" else "111111"
    messages = [service.verify_otp(PHONE_NUMBER, wrong, handle).message for _ in range(4)]
    assert messages == [
        "Invalid OTP. 2 attempts remaining.",
        "Invalid OTP. 1 attempts remaining.",
        "Invalid OTP. 0 attempts remaining.",
        "Too many invalid attempts. Please request new OTP.",
    ]
    # one issuance plus four failed verifies
    assert service.blocks.get(PHONE_NUMBER).daily_attempts == 5
    assert service.ledger.get(PHONE_NUMBER) is None


def test_mismatched_handle_is_not_found_and_not_counted(service, sms):
    _initiate(service)
    result = service.verify_otp(PHONE_NUMBER, sms.last_code(), "not-the-handle")
    assert result.error.code == "otp_not_found"
    assert service.blocks.get(PHONE_NUMBER).daily_attempts == 1


def test_temporary_block_stops_initiate(service):
    for _ in range(7):
        service.blocks.record_attempt(PHONE_NUMBER)
    result = _initiate(service)
    assert result.status_code == 403
    assert result.message == "Account is temporarily blocked. Try again after 24 hours."
    error = result.to_body()["error"]
    assert error["code"] == "blocked_temporary"
    assert error["remainingSeconds"] == 24 * 60 * 60
    assert error["remainingTime"] == "24h 0m"


def test_permanent_block_stops_verify_and_unblock_restores(service, sms):
    handle = _initiate(service).data["verificationId"]
    for _ in range(7):
        service.blocks.record_attempt(PHONE_NUMBER)
    result = service.verify_otp(PHONE_NUMBER, sms.last_code(), handle)
    assert result.error.code == "blocked_permanent"
    assert result.to_body()["error"]["isAdminBlocked"] is True
    assert [v.phone for v in service.list_blocked()] == [PHONE_NUMBER]

    assert service.unblock(PHONE_NUMBER) is True
    assert service.list_blocked() == []
    result = service.verify_otp(PHONE_NUMBER, sms.last_code(), handle)
    assert result.success is True


def test_seven_initiations_in_a_day_lead_to_block(service, clock):
    for _ in range(7):
        assert _initiate(service).success is True
        clock.advance(301)
    result = _initiate(service)
    assert result.error.code == "blocked_temporary"


def test_suspicious_phone_is_refused_and_ip_logged(service):
    for i in range(5):
        service.detector.note_device(PHONE_NUMBER, DeviceInfo(user_agent=f"agent/{i}"))
    result = _initiate(service, device=DeviceInfo(user_agent="agent/new", ip="10.9.9.9"))
    assert result.status_code == 403
    assert result.message == "Request blocked due to suspicious activity"
    assert service.detector.failed_attempts("10.9.9.9", IP).reasons[0].endswith("Suspicious activity detected")
    assert service.detector.failed_attempts(PHONE_NUMBER, PHONE).attempts == 1
    assert service.ledger.get(PHONE_NUMBER) is None


def test_delivery_failure_discards_code(service, sms):
    sms.fail = True
    result = _initiate(service)
    assert result.status_code == 500
    assert result.error.code == "internal_error"
    assert result.message == "Failed to initiate phone authentication"
    assert service.ledger.get(PHONE_NUMBER) is None

    sms.fail = False
    assert _initiate(service).success is True


def test_storage_failure_becomes_internal_error(service, monkeypatch):
    def broken(phone):
        raise OperationalError("select", {}, Exception("database is down"))

    monkeypatch.setattr(service.blocks, "check_blocked", broken)
    result = service.verify_otp(PHONE_NUMBER, "123456", "handle")
    assert result.status_code == 500
    assert result.message == "Failed to verify OTP"
    # detail is only exposed in dev mode
    assert "OperationalError" in result.to_body()["error"]["detail"]

    service.expose_errors = False
    result = service.verify_otp(PHONE_NUMBER, "123456", "handle")
    assert "detail" not in result.to_body()["error"]


def test_dev_echo_returns_code(service, sms):
    service.dev_echo = True
    result = _initiate(service)
    assert result.data["devCode"] == sms.last_code()


def test_issued_token_expires(service, sms):
    handle = _initiate(service).data["verificationId"]
    token = service.verify_otp(PHONE_NUMBER, sms.last_code(), handle).data["token"]
    # the test clock sits in the past, so the 7 day token is already expired
    with pytest.raises(HTTPException) as exc:
        decode_access_token(token)
    assert exc.value.status_code == 401
    with pytest.raises(HTTPException):
        decode_access_token(token, secret="another-secret-entirely", verify_exp=False)
