"""
Error taxonomy for the LocalLens API.

Service modules raise these; main.py turns them into
``{"error": kind, "detail": message}`` responses.
"""


class LocalLensError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.kind


class Unauthorized(LocalLensError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(LocalLensError):
    kind = "forbidden"
    status_code = 403


class NotFound(LocalLensError):
    kind = "not_found"
    status_code = 404


class InvalidArgument(LocalLensError):
    kind = "invalid_argument"
    status_code = 400


class Conflict(LocalLensError):
    kind = "conflict"
    status_code = 409


class PaymentVerificationFailed(LocalLensError):
    kind = "payment_verification_failed"
    status_code = 400


class Unavailable(LocalLensError):
    kind = "unavailable"
    status_code = 500
