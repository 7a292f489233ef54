import pytest

from core.error_classifier import ErrorKind, classify_error, is_not_found, is_not_ready, is_rate_limited
from core.errors import PlatformError


@pytest.mark.parametrize("error, expected", [
    (PlatformError("Broadcast gone", status_code=404), ErrorKind.NOT_FOUND),
    (PlatformError("Slow down", status_code=429), ErrorKind.RATE_LIMITED),
    (PlatformError("The request cannot be completed", status_code=403, reason="quotaExceeded"), ErrorKind.RATE_LIMITED),
    (PlatformError("Already there", status_code=403, reason="redundantTransition"), ErrorKind.REDUNDANT),
    (PlatformError("connection reset", transient=True), ErrorKind.TRANSIENT),
])
def test_structured_fields_win(error, expected):
    assert classify_error(error) == expected


@pytest.mark.parametrize("message, expected", [
    ("Broadcast not found", ErrorKind.NOT_FOUND),
    ("Request failed with status 404", ErrorKind.NOT_FOUND),
    ("User rate limit exceeded", ErrorKind.RATE_LIMITED),
    ("You have exceeded your quota", ErrorKind.RATE_LIMITED),
    ("Redundant transition", ErrorKind.REDUNDANT),
    ("Invalid transition", ErrorKind.NOT_READY),
    ("The stream is inactive", ErrorKind.NOT_READY),
    ("errorStreamInactive", ErrorKind.NOT_READY),
    ("Ingestion has not started", ErrorKind.NOT_READY),
    ("Stream validation failed", ErrorKind.NOT_READY),
    ("Broadcast not ready yet", ErrorKind.NOT_READY),
    ("Permission denied", ErrorKind.TERMINAL),
])
def test_message_fallback(message, expected):
    assert classify_error(RuntimeError(message)) == expected


def test_platform_error_without_code_falls_back_to_message():
    error = PlatformError("Invalid transition", status_code=403, reason="invalidTransition")
    assert classify_error(error) == ErrorKind.NOT_READY


def test_builtin_network_errors_are_transient():
    assert classify_error(ConnectionResetError("reset")) == ErrorKind.TRANSIENT
    assert classify_error(TimeoutError()) == ErrorKind.TRANSIENT


def test_helpers():
    assert is_not_ready(RuntimeError("stream inactive"))
    assert is_rate_limited(PlatformError("x", status_code=429))
    assert is_not_found(PlatformError("x", status_code=404))
    assert not is_not_found(RuntimeError("boom"))
