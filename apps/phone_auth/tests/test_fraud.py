import pytest

from app.fraud import IP, PHONE, DeviceInfo, SuspiciousActivityDetector


PHONE_NUMBER = "+14155552671"


def _detector(session_factory, clock, **kwargs):
    return SuspiciousActivityDetector(session_factory, clock=clock, **kwargs)


def _see(detector, count, phone=PHONE_NUMBER, prefix="agent"):
    for i in range(count):
        detector.note_device(phone, DeviceInfo(user_agent=f"{prefix}/{i}", ip="10.0.0.1"))


def test_five_devices_are_tolerated(session_factory, clock):
    detector = _detector(session_factory, clock)
    _see(detector, 5)
    assert detector.is_suspicious(PHONE_NUMBER) is False
    assert detector.failed_attempts(PHONE_NUMBER, PHONE) is None


def test_sixth_device_flags_phone_and_logs_it(session_factory, clock):
    detector = _detector(session_factory, clock)
    _see(detector, 6)
    assert detector.is_suspicious(PHONE_NUMBER) is True
    logged = detector.failed_attempts(PHONE_NUMBER, PHONE)
    assert logged.attempts == 1
    assert logged.reasons == [f"{clock.now().isoformat()}: Multiple device attempts"]


def test_repeated_user_agent_counts_once(session_factory, clock):
    detector = _detector(session_factory, clock)
    for _ in range(10):
        detector.note_device(PHONE_NUMBER, DeviceInfo(user_agent="same-agent"))
    assert detector.distinct_devices(PHONE_NUMBER) == 1
    assert detector.is_suspicious(PHONE_NUMBER) is False


def test_sightings_outside_window_are_ignored(session_factory, clock):
    detector = _detector(session_factory, clock)
    _see(detector, 4, prefix="old")
    clock.advance(hours=24, seconds=1)
    _see(detector, 3, prefix="new")
    assert detector.distinct_devices(PHONE_NUMBER) == 3
    assert detector.is_suspicious(PHONE_NUMBER) is False


def test_devices_are_counted_per_phone(session_factory, clock):
    detector = _detector(session_factory, clock)
    _see(detector, 6, phone="+14155550001")
    assert detector.is_suspicious("+14155550002") is False


def test_log_failed_attempt_accumulates_reasons_in_order(session_factory, clock):
    detector = _detector(session_factory, clock)
    detector.log_failed_attempt("10.0.0.9", IP, "first")
    clock.advance(5)
    detector.log_failed_attempt("10.0.0.9", IP, "second")
    detector.log_failed_attempt("10.0.0.9", PHONE, "other kind")

    logged = detector.failed_attempts("10.0.0.9", IP)
    assert logged.attempts == 2
    assert logged.last_attempt == clock.now()
    assert [r.split(": ", 1)[1] for r in logged.reasons] == ["first", "second"]
    assert detector.failed_attempts("10.0.0.9", PHONE).attempts == 1


def test_log_failed_attempt_rejects_unknown_kind(session_factory, clock):
    with pytest.raises(ValueError):
        _detector(session_factory, clock).log_failed_attempt("x", "EMAIL", "nope")


def test_prune_removes_old_sightings(session_factory, clock):
    detector = _detector(session_factory, clock)
    _see(detector, 2)
    clock.advance(hours=25)
    _see(detector, 1, prefix="fresh")
    assert detector.prune() == 2
    assert detector.distinct_devices(PHONE_NUMBER) == 1


def test_device_fingerprint_is_stable():
    a = DeviceInfo(user_agent="ua", ip="10.0.0.1")
    b = DeviceInfo(user_agent="ua", ip="10.0.0.1")
    assert a.fingerprint == b.fingerprint
    assert a.fingerprint != DeviceInfo(user_agent="ua", ip="10.0.0.2").fingerprint
