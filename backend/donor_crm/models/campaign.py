from beanie import Document, PydanticObjectId
from pydantic import Field
from typing import Optional


class Campaign(Document):
    name: str = Field(..., examples=["Diwali Appeal 2024"])
    organization: Optional[PydanticObjectId] = None

    class Settings:
        name = "campaigns"
