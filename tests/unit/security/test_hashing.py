import pytest

from portal_notify.security import hashing


def _configure_secret(monkeypatch, secret: str = "a" * 32):
    monkeypatch.setattr("portal_notify.security.hashing.settings.HASHING_SECRET", secret, raising=False)


def test_compute_hmac_is_deterministic(monkeypatch):
    _configure_secret(monkeypatch)
    first = hashing.compute_hmac("value", namespace="test")
    second = hashing.compute_hmac("value", namespace="test")
    assert first == second


def test_namespaces_change_output(monkeypatch):
    _configure_secret(monkeypatch)
    assert hashing.compute_hmac("abc", namespace="generic") != hashing.compute_hmac("abc", namespace="device")


def test_device_id_wins_over_user_agent(monkeypatch):
    _configure_secret(monkeypatch)
    first = hashing.device_fingerprint("user-1", "Mozilla/5.0", "web", device_id="device-1")
    second = hashing.device_fingerprint("user-1", "Safari/17", "ios", device_id="device-1")
    assert first == second


def test_user_agent_fallback_is_normalized(monkeypatch):
    _configure_secret(monkeypatch)
    first = hashing.device_fingerprint("user-1", " Mozilla/5.0 ", "Web")
    second = hashing.device_fingerprint("user-1", "mozilla/5.0", "web")
    assert first == second


def test_fingerprint_is_scoped_to_user(monkeypatch):
    _configure_secret(monkeypatch)
    assert hashing.device_fingerprint("user-1", None, None, device_id="d") != hashing.device_fingerprint(
        "user-2", None, None, device_id="d"
    )


def test_missing_secret_raises(monkeypatch):
    monkeypatch.setattr("portal_notify.security.hashing.settings.HASHING_SECRET", "", raising=False)
    with pytest.raises(hashing.HashingError):
        hashing.compute_hmac("value", namespace="test")


def test_too_short_secret_raises(monkeypatch):
    monkeypatch.setattr("portal_notify.security.hashing.settings.HASHING_SECRET", "short", raising=False)
    with pytest.raises(hashing.HashingError):
        hashing.compute_hmac("value", namespace="test")
