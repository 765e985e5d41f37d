"""
Error taxonomy shared by the services and the HTTP layer.

Services raise these; the blueprint turns them into JSON responses with
the matching status code. The tracking endpoint is the only caller that
swallows them.
"""


class SecureGuardError(Exception):
    status_code = 500

    def __init__(self, message: str | None = None, fields: dict | None = None):
        self.message = message or (self.__doc__ or self.__class__.__name__).strip()
        self.fields = fields or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"error": self.__class__.__name__, "message": self.message}
        if self.fields:
            payload["fields"] = self.fields
        return payload


# ---- families ----

class NotFound(SecureGuardError):
    """Resource not found."""
    status_code = 404


class Conflict(SecureGuardError):
    """Request conflicts with existing state."""
    status_code = 409


class InvalidState(SecureGuardError):
    """Illegal campaign state transition."""
    status_code = 409


class ValidationError(SecureGuardError):
    """Malformed input."""
    status_code = 400


class Unauthorized(SecureGuardError):
    """Login required."""
    status_code = 401


# ---- concrete errors ----

class UserNotFound(NotFound):
    """User not found."""


class TemplateNotFound(NotFound):
    """Template not found."""


class CampaignNotFound(NotFound):
    """Campaign not found."""


class DuplicateUser(Conflict):
    """A user with that username or email already exists."""


class TemplateInUse(Conflict):
    """Template is still referenced by a pending or active campaign."""


class AlreadyLaunched(Conflict):
    """Campaign has already been launched."""


class TokenCollision(Conflict):
    """Could not issue a unique tracking token."""


class EmptyTargetGroup(ValidationError):
    """Target group does not contain any active users."""

    def __init__(self, target_group: str):
        super().__init__(
            f"Target group '{target_group}' does not contain any active users.",
            fields={"target_group": "resolves to zero users"},
        )


def non_string_fields(**values) -> dict:
    """Field errors for values that were given but are not text."""
    return {key: "must be a string" for key, value in values.items()
            if value is not None and not isinstance(value, str)}
