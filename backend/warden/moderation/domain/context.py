"""Explicit caller context threaded through moderation entry points."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Who is acting: the profile, the client IP and the device, any of which may be unknown."""

    subject_id: Optional[str] = None
    ip: Optional[str] = None
    device_id: Optional[str] = None

    def subject_key(self, scope: str = "subject") -> Optional[str]:
        """Return the rate-limit key for ``scope`` or ``None`` when that identity is missing."""
        if scope == "ip":
            return f"ip:{self.ip}" if self.ip else None
        if scope == "device":
            return f"device:{self.device_id}" if self.device_id else None
        return f"profile:{self.subject_id}" if self.subject_id else None

    def audit_subject(self) -> Optional[str]:
        if self.subject_id:
            return self.subject_id
        if self.device_id:
            return f"device:{self.device_id}"
        if self.ip:
            return f"ip:{self.ip}"
        return None


SYSTEM_CONTEXT = RequestContext()
