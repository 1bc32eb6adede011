# schemas.py - Pydantic models shared by the managers
"""
Typed inputs for the order service: the authenticated acting user and the
optional customer profile details captured at order creation.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field

from order_lifecycle import UserRole


class ActingUser(BaseModel):
    """The authenticated caller performing an operation."""
    user_id: str
    role: UserRole
    franchise_area_id: Optional[str] = None

    @classmethod
    def from_token_payload(cls, payload: Dict[str, Any]) -> "ActingUser":
        """Build from a decoded JWT payload (`user_id` or `sub`, `role`, `franchise_area_id`)."""
        user_id = payload.get("user_id") or payload.get("sub")
        if not user_id:
            raise ValueError("Token payload has no user id")
        return cls(
            user_id=str(user_id),
            role=UserRole(str(payload.get("role", "")).lower()),
            franchise_area_id=payload.get("franchise_area_id"),
        )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class UserDetails(BaseModel):
    """Customer profile fields that may be refreshed when an order is placed."""
    name: str = Field(..., min_length=1, max_length=120)
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    alternative_phone: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    def to_profile_update(self) -> Dict[str, Any]:
        fields = self.model_dump(exclude_none=True)
        if "latitude" in fields:
            fields["location_latitude"] = fields.pop("latitude")
        if "longitude" in fields:
            fields["location_longitude"] = fields.pop("longitude")
        return fields
