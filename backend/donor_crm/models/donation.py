from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel
from typing import Literal, Optional
from datetime import datetime

from donor_crm.services.delays import utcnow


class Donation(Document):
    donor: PydanticObjectId  # Contact id
    organization: PydanticObjectId
    campaign: Optional[PydanticObjectId] = None
    amount: float = Field(..., ge=1)
    currency: str = "INR"
    type: Literal["one-time", "monthly"] = "one-time"
    status: Literal["pending", "completed", "failed", "cancelled"] = "pending"
    payment_method: str = Field(..., examples=["upi"])
    donation_date: datetime = Field(default_factory=utcnow)
    receipt_status: Literal["pending", "generated", "failed"] = "pending"
    eighty_g_status: Optional[str] = None

    class Settings:
        name = "donations"
        indexes = [
            IndexModel([("organization", ASCENDING), ("donation_date", DESCENDING)]),
            IndexModel([("donor", ASCENDING), ("donation_date", DESCENDING)]),
        ]
