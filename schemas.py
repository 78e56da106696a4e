from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from models import Condition, OrgRole, Urgency


class _Located(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    city: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def _both_coordinates(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        if self.city == "":
            self.city = None
        return self


class DonationCreate(_Located):
    category: str = Field(min_length=1)
    quantity: str = Field(min_length=1)
    condition: Condition
    description: str = Field(min_length=1)


class RequestCreate(_Located):
    category: str = Field(min_length=1)
    quantity: str = Field(min_length=1)
    urgency: Urgency = Urgency.MEDIUM
    description: str = Field(min_length=1)


class ClaimIn(BaseModel):
    request_id: Optional[str] = None


class ClaimOut(BaseModel):
    match_id: str
    donation_id: str
    request_id: Optional[str] = None
    score: Optional[float] = None
    warnings: List[dict] = Field(default_factory=list)


class OrgCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1)
    password: str = Field(min_length=1)
    role: OrgRole


class OrgRead(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: OrgRole

    model_config = ConfigDict(from_attributes=True)


class LoginData(BaseModel):
    email: EmailStr
    password: str
