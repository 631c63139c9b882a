from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from donor_crm.services.delays import utcnow


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = "India"


class Contact(Document):
    title: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    whatsapp: Optional[str] = None
    organization: Optional[PydanticObjectId] = None
    address: Optional[Address] = None
    donor_type: Optional[str] = Field(default=None, examples=["individual"])
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "contacts"

    @property
    def display_name(self) -> str:
        full_name = " ".join(part for part in [self.first_name, self.last_name] if part)
        return full_name or self.name or ""
