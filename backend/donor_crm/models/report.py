from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional
from datetime import datetime

from donor_crm.services.delays import utcnow

ReportType = Literal["donation", "donor", "campaign", "financial"]


class ReportFilters(BaseModel):
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    campaign_id: Optional[str] = None
    payment_method: Optional[str] = None
    type: Optional[str] = None
    organization: Optional[str] = None
    donor_type: Optional[str] = None
    search: Optional[str] = None


class ReportComponent(BaseModel):
    id: str
    kind: Literal["table", "bar", "pie", "line"] = "table"
    title: str = ""
    query_key: str = Field(default="", examples=["donation_summary_by_month"])
    group_by: str = Field(default="", examples=["month"])
    metrics: List[str] = Field(default_factory=list)  # subset of sumAmount, count
    sort: Dict[str, int] = Field(default_factory=dict)


class ReportDefinition(BaseModel):
    """What the aggregation engine needs to run a report, persisted or ad hoc."""

    type: Optional[ReportType] = None
    filters: ReportFilters = Field(default_factory=ReportFilters)
    fields: List[str] = Field(default_factory=list)
    components: List[ReportComponent] = Field(default_factory=list)


class Report(Document):
    name: str = Field(..., min_length=1)
    type: ReportType
    organization: PydanticObjectId
    filters: ReportFilters = Field(default_factory=ReportFilters)
    fields: List[str] = Field(default_factory=list)
    components: List[ReportComponent] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "reports"
