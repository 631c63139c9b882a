from dataclasses import dataclass
from typing import Any, Dict, Optional

from beanie import PydanticObjectId
from bson import ObjectId
from bson.errors import InvalidId

from donor_crm import config


@dataclass(frozen=True)
class Caller:
    """Identity of whoever is calling into the services, as asserted by the upstream gateway."""

    user_id: Optional[str] = None
    role: str = "user"
    organization_id: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in config.PRIVILEGED_ROLES

    def can_access(self, organization_id: Any) -> bool:
        if self.is_privileged or not self.organization_id:
            return True
        return str(organization_id) == str(self.organization_id)


def to_object_id(value: Any) -> Optional[PydanticObjectId]:
    """Convert a caller supplied id; None when it is missing or malformed."""
    if value is None or value == "":
        return None
    if isinstance(value, ObjectId):
        return PydanticObjectId(value)
    try:
        return PydanticObjectId(str(value))
    except (InvalidId, TypeError, ValueError):
        return None


def scope_query(caller: Caller, query: Dict[str, Any]) -> Dict[str, Any]:
    """
    Restrict a query to the caller's organization.
    Non-privileged callers are always pinned to their own organization, whatever the query asked for.
    """
    scoped = dict(query)
    if not caller.is_privileged and caller.organization_id:
        organization_id = to_object_id(caller.organization_id)
        scoped["organization"] = organization_id if organization_id is not None else caller.organization_id
    return scoped
