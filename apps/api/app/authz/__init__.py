from app.authz.models import APP_ROLES, AuthSession, Profile, UserRole

__all__ = [
    "APP_ROLES",
    "AuthSession",
    "Profile",
    "UserRole",
]
