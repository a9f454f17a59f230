"""
auth/errors.py -- Exception taxonomy for the auth and RBAC services.

Services raise these; the API layer maps them to the ErrorResponse envelope
through a single exception handler keyed on AuthError.status_code.

Every authentication failure uses the same message regardless of cause
(unknown email, wrong password, inactive account, revoked token) so a caller
cannot use error text to enumerate accounts.

Persistence errors (sqlalchemy.exc.*) are deliberately NOT wrapped here. They
propagate as internal failures.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. code is machine-readable; message is safe to show to clients."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "Email already in use."


class Unauthorized(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Invalid credentials."


class NotFound(AuthError):
    """Referenced entity is absent.

    Raised only by management endpoints. RbacResolver never raises it: a
    missing user or salon is a deny there, so existence is not revealed.
    """

    status_code = 404
    code = "not_found"
    default_message = "Not found."
