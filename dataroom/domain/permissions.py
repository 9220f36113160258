from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


ROOM_TYPES = {"DEAL_ROOM", "DUE_DILIGENCE", "INVESTOR_PORTAL", "BOARD", "COMPLIANCE", "GENERAL"}
ROOM_STATUS_ACTIVE = "ACTIVE"
ROOM_STATUS_ARCHIVED = "ARCHIVED"
ROOM_STATUS_EXPIRED = "EXPIRED"

VIEWER_ROLES = ("owner", "admin", "editor", "viewer", "external")
VIEWER_STATUS_INVITED = "invited"
VIEWER_STATUS_ACTIVE = "active"
VIEWER_STATUS_REVOKED = "revoked"
VIEWER_STATUS_EXPIRED = "expired"

ACCESS_ACTIONS = ("view", "download", "print", "share", "upload", "delete", "preview")

CAPABILITIES = (
    "can_view",
    "can_download",
    "can_print",
    "can_share",
    "can_upload",
    "can_delete",
    "can_manage_viewers",
)

# Map each logged action to the capability that gates it.
ACTION_CAPABILITY: dict[str, str] = {
    "view": "can_view",
    "preview": "can_view",
    "download": "can_download",
    "print": "can_print",
    "share": "can_share",
    "upload": "can_upload",
    "delete": "can_delete",
}


class ViewerPermissions(BaseModel):
    can_view: bool = True
    can_download: bool = False
    can_print: bool = False
    can_share: bool = False
    can_upload: bool = False
    can_delete: bool = False
    can_manage_viewers: bool = False
    # Explicit denials; they override any positive capability.
    folder_restrictions: list[str] = Field(default_factory=list)
    document_restrictions: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None

    def allows(self, capability: str) -> bool:
        if capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability: {capability}")
        return bool(getattr(self, capability))

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, payload: dict[str, Any] | None) -> "ViewerPermissions":
        return cls.model_validate(payload or {})


def full_permissions() -> ViewerPermissions:
    # Owners always hold every capability.
    return ViewerPermissions(**{capability: True for capability in CAPABILITIES})


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary.
    normalized = role.strip().lower()
    if normalized not in VIEWER_ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def normalize_email(email: str) -> str:
    return email.strip().lower()
