"""
Mundoctor User Models
Local user records and the request context used for audit attribution
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from .enums import UserStatus


class LocalUser(BaseModel):
    """A user row joined with its role-specific profile flags"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str
    status: str = UserStatus.ACTIVE.value
    verified: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Professional profile, when present
    profile_completed: Optional[bool] = None
    professional_verified: Optional[bool] = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def public_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class RequestContext:
    """Client attributes copied onto every audit event for a request"""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
