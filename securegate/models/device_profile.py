"""
Device Profile Model.

One record per user who has authenticated on this device, used to
render the quick-login account picker.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class DeviceProfile(BaseModel):
    """A user who has previously signed in on this device."""

    user_id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_login_at: datetime

    model_config = {"from_attributes": True}

    @property
    def initials(self) -> str:
        """Up to two upper-case initials from the display name, or ``"?"``."""
        if not self.display_name:
            return "?"
        parts = self.display_name.split()
        if len(parts) >= 2:
            return f"{parts[0][0]}{parts[1][0]}".upper()
        if parts:
            return parts[0][0].upper()
        return "?"
