from beanie import Document
from pydantic import Field


class Organization(Document):
    name: str = Field(..., examples=["Seva Sadan Trust"])

    class Settings:
        name = "organizations"
