"""
Domain errors raised by the signing services.

Every error carries a stable ``code`` from the public vocabulary, a
human-readable message and the HTTP status the API answers with.
"""


class SigningError(Exception):
    status_code = 400
    default_code = "error"

    def __init__(self, code=None, message=None, status_code=None, **extra):
        self.code = code or self.default_code
        self.message = message or self.code.replace("_", " ").capitalize()
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self):
        body = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class InvalidTokenError(SigningError):
    """Any token that fails signature, expiry, type or hash checks."""

    status_code = 401
    default_code = "invalid_token"


class NotFoundError(SigningError):
    status_code = 404
    default_code = "not_found"


class TurnError(SigningError):
    """A signer acted while not holding the turn."""

    _statuses = {
        "not_your_turn": 403,
        "already_signed": 409,
        "declined": 409,
        "invalid_status": 400,
    }

    def __init__(self, code, message=None):
        super().__init__(code, message, status_code=self._statuses.get(code, 400))


class OTPError(SigningError):
    _statuses = {
        "invalid_otp": 400,
        "otp_expired": 410,
        "otp_locked": 429,
        "otp_not_found": 404,
    }

    def __init__(self, code, message=None, **extra):
        super().__init__(code, message, status_code=self._statuses.get(code, 400), **extra)


class ValidationFailed(SigningError):
    status_code = 400
    default_code = "validation_failed"


class ConflictError(SigningError):
    """A compare-and-set write found the row already moved on."""

    status_code = 409
    default_code = "conflict"


class StorageError(SigningError):
    status_code = 500
    default_code = "storage_error"
