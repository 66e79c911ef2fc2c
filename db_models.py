import re
from pydantic import BaseModel, StrictStr, field_validator, model_validator
from typing import Optional, List

PRIMARY = "primary"
SECONDARY = "secondary"

PHONE_PATTERN = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?\s*$")


class IdentifyRequest(BaseModel):
    email: Optional[StrictStr] = None
    phoneNumber: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, value):
        if value == "":
            return None
        return value

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def numeric_phone(cls, value):
        """Accept phone numbers sent as JSON numbers or numeric-looking strings."""
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValueError("Invalid phone number")
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, (int, float)):
            value = str(value)
        if not isinstance(value, str) or not PHONE_PATTERN.match(value):
            raise ValueError("Invalid phone number")
        return value

    @model_validator(mode="after")
    def require_identifier(self):
        if self.email is None and self.phoneNumber is None:
            raise ValueError("At least one of email or phoneNumber is required")
        return self

class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]

class FinalResponse(BaseModel):
    contact: ContactResponse

class HealthResponse(BaseModel):
    message: str
    time: str
