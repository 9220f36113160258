from __future__ import annotations

from typing import Any


class DataRoomError(Exception):
    """Base error for the data room service."""

    code = "DATA_ROOM_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


class Unauthorized(DataRoomError):
    """Caller is not authorized for the target company."""

    code = "UNAUTHORIZED"
    status_code = 403


class NotFound(DataRoomError):
    """Requested entity does not exist or is archived."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidQuery(DataRoomError):
    """Malformed filter or continuation token."""

    code = "INVALID_QUERY"
    status_code = 400


class DuplicateViewer(DataRoomError):
    """Viewer already has a non-revoked record in this room."""

    code = "DUPLICATE_VIEWER"
    status_code = 409


class PermissionDenied(DataRoomError):
    """Viewer lacks the requested capability."""

    code = "PERMISSION_DENIED"
    status_code = 403

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or f"Permission denied: {reason}")
        # Keep the granular reason for audit rows; callers may hide it.
        self.reason = reason


class StorageUnavailable(DataRoomError):
    """Object storage collaborator failed; safe to retry."""

    code = "STORAGE_UNAVAILABLE"
    status_code = 503


class LinkValidationError(DataRoomError):
    """Secure link could not be redeemed."""

    code = "LINK_INVALID"
    status_code = 403

    def __init__(self, message: str | None = None, *, link: Any = None) -> None:
        super().__init__(message)
        # Attach the matched link (if any) so the failed attempt can be logged against its room.
        self.link = link


class InvalidLink(LinkValidationError):
    """Invalid link"""

    code = "INVALID_LINK"


class LinkRevoked(LinkValidationError):
    """Link has been revoked"""

    code = "LINK_REVOKED"


class LinkExpired(LinkValidationError):
    """Link has expired"""

    code = "LINK_EXPIRED"


class LinkExhausted(LinkValidationError):
    """Link usage limit reached"""

    code = "LINK_EXHAUSTED"


class PinRequired(LinkValidationError):
    """PIN required"""

    code = "PIN_REQUIRED"


class InvalidPin(LinkValidationError):
    """Invalid PIN"""

    code = "INVALID_PIN"


class EmailRequired(LinkValidationError):
    """Email required"""

    code = "EMAIL_REQUIRED"


class EmailNotAuthorized(LinkValidationError):
    """Email not authorized"""

    code = "EMAIL_NOT_AUTHORIZED"
