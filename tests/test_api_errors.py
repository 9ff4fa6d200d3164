from __future__ import annotations

from schoolgate.api.errors import ApiErrorCode, PolicyViolation, rate_limited, to_error_payload


def test_to_error_payload_preserves_structured_detail() -> None:
    payload = to_error_payload(
        {"error_code": "AUTH_TOKEN_INVALID", "message": "Invalid"},
        401,
    )

    assert payload == {
        "success": False,
        "error_code": "AUTH_TOKEN_INVALID",
        "message": "Invalid",
    }


def test_to_error_payload_keeps_field_errors() -> None:
    payload = to_error_payload(
        {"error_code": "VALIDATION_ERROR", "message": "bad", "errors": {"email": "required"}},
        422,
    )

    assert payload["errors"] == {"email": "required"}


def test_to_error_payload_normalizes_plain_string() -> None:
    payload = to_error_payload("boom", 500)

    assert payload == {"success": False, "error_code": "HTTP_500", "message": "boom"}


def test_rate_limited_carries_retry_after_of_at_least_one_second() -> None:
    violation = rate_limited("Too many requests", 0)

    assert isinstance(violation, PolicyViolation)
    assert violation.status_code == 429
    assert violation.detail["error_code"] == ApiErrorCode.RATE_LIMITED
    assert violation.headers == {"Retry-After": "1"}
