from __future__ import annotations


class GuardRejection(Exception):
    """Base error for a protected view that must not render."""


class SignInRequired(GuardRejection):
    """Raised when no session is present; the caller is sent to the sign-in view."""


class AccessDenied(GuardRejection):
    """Raised when the session lacks every role in the required set."""

    def __init__(self, required_roles: frozenset[str]) -> None:
        self.required_roles = required_roles
        super().__init__(f"Missing role: {' or '.join(sorted(required_roles))}")
