from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from donor_crm.services.delays import utcnow

# "claimed" is transient: a tick holds it while executing the run's current node.
RunStatus = Literal["pending", "running", "claimed", "completed", "stopped", "error"]

SCHEDULABLE_STATUSES = ["pending", "running"]
TERMINAL_STATUSES = ["completed", "stopped", "error"]


class RunHistoryEntry(BaseModel):
    node_id: str
    node_type: Optional[str] = None
    executed_at: datetime
    result: Dict[str, Any] = Field(default_factory=dict)


class JourneyRun(Document):
    """One contact's progress through one journey."""

    journey: PydanticObjectId
    contact: PydanticObjectId
    organization: PydanticObjectId
    status: RunStatus = "pending"
    current_node_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    consecutive_failures: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    history: List[RunHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "journey_runs"
        indexes = [
            IndexModel([("status", ASCENDING), ("scheduled_at", ASCENDING)]),
            IndexModel([("journey", ASCENDING)]),
        ]

    def finish(self, status: str):
        self.status = status
        self.current_node_id = None
        self.scheduled_at = None
        self.claimed_at = None
