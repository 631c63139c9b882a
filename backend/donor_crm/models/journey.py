from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from donor_crm.services.delays import utcnow

JourneyStatus = Literal["draft", "active", "inactive"]


class JourneyNode(BaseModel):
    id: str = Field(..., examples=["n1"])
    type: str = Field(..., examples=["email"])  # email, sms, whatsapp, condition, ...
    x: Optional[float] = None
    y: Optional[float] = None
    # Type specific payload: delay ("10m"), subject/title, content/subtitle, conditionType/value
    data: Dict[str, Any] = Field(default_factory=dict)


class JourneyEdge(BaseModel):
    id: str
    from_node: str
    to_node: str


def duplicate_node_ids(nodes: List[JourneyNode]) -> List[str]:
    """Node ids that occur more than once, in first-seen order."""
    seen = set()
    duplicates: List[str] = []
    for node in nodes or []:
        if node.id in seen and node.id not in duplicates:
            duplicates.append(node.id)
        seen.add(node.id)
    return duplicates


class Journey(Document):
    name: str = Field(..., min_length=1, examples=["Welcome series"])
    organization: PydanticObjectId
    status: JourneyStatus = "draft"
    description: str = ""
    nodes: List[JourneyNode] = Field(default_factory=list)
    # Kept for the canvas; execution walks `nodes` in order.
    edges: List[JourneyEdge] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "journeys"

    @field_validator("nodes")
    @classmethod
    def node_ids_are_unique(cls, nodes: List[JourneyNode]) -> List[JourneyNode]:
        duplicates = duplicate_node_ids(nodes)
        if duplicates:
            raise ValueError(f"Duplicate node ids: {','.join(duplicates)}")
        return nodes

    def find_node(self, node_id: Optional[str]) -> Optional[JourneyNode]:
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def next_node(self, node_id: str) -> Optional[JourneyNode]:
        """The node right after `node_id` in the ordered node list."""
        for index, node in enumerate(self.nodes):
            if node.id == node_id:
                return self.nodes[index + 1] if index + 1 < len(self.nodes) else None
        return None

    @property
    def first_node(self) -> Optional[JourneyNode]:
        return self.nodes[0] if self.nodes else None
