from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, StrictStr, field_validator, model_validator


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    id: int
    phoneNumber: Optional[str] = None
    email: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: datetime
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY


class ContactUpdate(BaseModel):
    """Sparse change set; only explicitly set fields are written."""

    linkedId: Optional[int] = None
    linkPrecedence: Optional[LinkPrecedence] = None


class IdentifyRequest(BaseModel):
    email: Optional[StrictStr] = None
    phoneNumber: Optional[StrictStr] = None

    @field_validator("email", "phoneNumber")
    @classmethod
    def blank_as_missing(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @model_validator(mode="after")
    def require_email_or_phone(self) -> "IdentifyRequest":
        if self.email is None and self.phoneNumber is None:
            raise ValueError("At least one of email or phoneNumber must be provided")
        return self


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse
