from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class UserRole(str, Enum):
    ADMIN = "Admin"
    RESEARCHER = "Researcher"
    PEER_REVIEWER = "Peer Reviewer"


class UserProfile(BaseModel):
    """
    Database model for public.user_profiles（身份/角色协作方的只读视图）
    """

    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: UserRole = UserRole.RESEARCHER

    model_config = ConfigDict(from_attributes=True)

    @property
    def display_name(self) -> str:
        name = (self.full_name or "").strip()
        if name:
            return name
        email = (self.email or "").strip()
        if email:
            return email.split("@")[0].replace(".", " ").title()
        return "Unknown user"
