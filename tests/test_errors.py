import pytest

from authkernel.service.errors import (
    AccessTokenExpiredError,
    CodeAlreadyUsedError,
    CodeExpiredError,
    EmailNotVerifiedError,
    InvalidRefreshTokenError,
    RefreshTokenReusedError,
    ServiceError,
    UserNotFoundError,
)


def test_envelope_hides_detail():
    exc = UserNotFoundError(detail={"user_id": "user-1"})

    assert exc.to_envelope() == {"error": {"code": "user_not_found", "message": "User not found"}}
    assert exc.detail == {"user_id": "user-1"}


def test_reuse_looks_like_invalid_refresh_token():
    reused = RefreshTokenReusedError()
    invalid = InvalidRefreshTokenError()

    assert reused.to_envelope() == invalid.to_envelope()
    assert reused.clear_refresh_credential is True


@pytest.mark.parametrize(
    "exc_cls, status",
    [
        (AccessTokenExpiredError, 401),
        (EmailNotVerifiedError, 403),
        (UserNotFoundError, 404),
        (CodeAlreadyUsedError, 409),
        (CodeExpiredError, 410),
    ],
)
def test_status_codes(exc_cls, status):
    assert exc_cls().status_code == status


def test_overrides():
    exc = ServiceError("custom", status_code=418, error_code="teapot")

    assert exc.to_envelope()["error"] == {"code": "teapot", "message": "custom"}
    assert exc.status_code == 418
