import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo import DESCENDING

from donor_crm.api.deps import get_caller, get_executor, serialize, to_http_error
from donor_crm.models.contact import Contact
from donor_crm.models.journey import Journey, JourneyEdge, JourneyNode, JourneyStatus, duplicate_node_ids
from donor_crm.models.journey_run import JourneyRun
from donor_crm.services.access import Caller, scope_query, to_object_id
from donor_crm.services.delays import utcnow
from donor_crm.services.errors import AuthorizationError, InvalidRequestError, ServiceError
from donor_crm.services.journey_executor import JourneyExecutor

logger = logging.getLogger(__name__)
router = APIRouter()


class JourneyCreate(BaseModel):
    name: str = ""
    organization: Optional[str] = None
    status: JourneyStatus = "draft"
    description: str = ""
    nodes: List[JourneyNode] = Field(default_factory=list)
    edges: List[JourneyEdge] = Field(default_factory=list)


class JourneyUpdate(BaseModel):
    name: Optional[str] = None
    status: Optional[JourneyStatus] = None
    description: Optional[str] = None
    nodes: Optional[List[JourneyNode]] = None
    edges: Optional[List[JourneyEdge]] = None


def check_node_ids(nodes: Optional[List[JourneyNode]]):
    duplicates = duplicate_node_ids(nodes or [])
    if duplicates:
        raise InvalidRequestError(f"Duplicate node ids: {','.join(duplicates)}")


class EnrollRequest(BaseModel):
    contacts: List[str] = Field(default_factory=list)


async def load_journey(journey_id: str, caller: Caller, executor: JourneyExecutor) -> Journey:
    journey = await executor.get_journey(journey_id)
    if not caller.can_access(journey.organization):
        raise AuthorizationError("Not authorized to access this journey")
    return journey


def contact_summary(contact: Optional[Contact]) -> Optional[Dict[str, Any]]:
    if contact is None:
        return None
    return {
        "id": str(contact.id),
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "name": contact.name,
        "email": contact.email,
        "phone": contact.phone,
        "mobile": contact.mobile,
        "whatsapp": contact.whatsapp,
    }


@router.get("/journeys")
async def list_journeys(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    status: Optional[str] = None,
    organization: Optional[str] = None,
    caller: Caller = Depends(get_caller),
):
    try:
        query: Dict[str, Any] = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"description": pattern}]
        if status and status != "all":
            query["status"] = status
        organization_id = to_object_id(organization)
        if organization_id is not None:
            query["organization"] = organization_id
        query = scope_query(caller, query)

        journeys = await Journey.find(query).sort([("created_at", DESCENDING)]).skip((page - 1) * limit).limit(limit).to_list()
        total = await Journey.find(query).count()
        return {"success": True, "total": total, "data": [serialize(journey) for journey in journeys]}
    except Exception as e:
        logger.error(f"Error listing journeys: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/journeys/{journey_id}")
async def get_journey(journey_id: str, caller: Caller = Depends(get_caller), executor: JourneyExecutor = Depends(get_executor)):
    try:
        journey = await load_journey(journey_id, caller, executor)
        return {"success": True, "data": serialize(journey)}
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/journeys", status_code=201)
async def create_journey(payload: JourneyCreate, caller: Caller = Depends(get_caller)):
    scoped = scope_query(caller, {"organization": to_object_id(payload.organization)})
    organization_id = to_object_id(scoped.get("organization"))
    if not payload.name.strip() or organization_id is None:
        raise HTTPException(status_code=400, detail="Name and Organization are required")

    try:
        check_node_ids(payload.nodes)
    except ServiceError as e:
        raise to_http_error(e)

    try:
        journey = Journey(
            name=payload.name.strip(),
            organization=organization_id,
            status=payload.status,
            description=payload.description,
            nodes=payload.nodes,
            edges=payload.edges,
            created_by=caller.user_id,
        )
        await journey.insert()
        logger.info(f"[JOURNEY] Created journey {journey.id} '{journey.name}' with {len(journey.nodes)} nodes")
        return {"success": True, "data": serialize(journey)}
    except Exception as e:
        logger.error(f"Error creating journey: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error creating journey: {str(e)}")


@router.put("/journeys/{journey_id}")
async def update_journey(
    journey_id: str,
    payload: JourneyUpdate,
    caller: Caller = Depends(get_caller),
    executor: JourneyExecutor = Depends(get_executor),
):
    try:
        check_node_ids(payload.nodes)
        journey = await load_journey(journey_id, caller, executor)
        for field in payload.model_dump(exclude_unset=True, exclude_none=True):
            setattr(journey, field, getattr(payload, field))
        journey.updated_at = utcnow()
        await journey.save()
        logger.info(f"[JOURNEY] Updated journey {journey.id}")
        return {"success": True, "data": serialize(journey)}
    except ServiceError as e:
        raise to_http_error(e)


@router.delete("/journeys/{journey_id}")
async def delete_journey(journey_id: str, caller: Caller = Depends(get_caller), executor: JourneyExecutor = Depends(get_executor)):
    try:
        journey = await load_journey(journey_id, caller, executor)
        await journey.delete()
        logger.info(f"[JOURNEY] Deleted journey {journey.id}")
        return {"success": True, "message": "Journey deleted"}
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/journeys/{journey_id}/activate")
async def activate_journey(journey_id: str, caller: Caller = Depends(get_caller), executor: JourneyExecutor = Depends(get_executor)):
    try:
        await load_journey(journey_id, caller, executor)
        journey = await executor.activate(journey_id)
        return {"success": True, "data": serialize(journey)}
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/journeys/{journey_id}/deactivate")
async def deactivate_journey(journey_id: str, caller: Caller = Depends(get_caller), executor: JourneyExecutor = Depends(get_executor)):
    try:
        await load_journey(journey_id, caller, executor)
        journey = await executor.deactivate(journey_id)
        return {"success": True, "data": serialize(journey)}
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/journeys/{journey_id}/enroll", status_code=201)
async def enroll_contacts(
    journey_id: str,
    payload: EnrollRequest,
    caller: Caller = Depends(get_caller),
    executor: JourneyExecutor = Depends(get_executor),
):
    try:
        count = await executor.enroll(journey_id, payload.contacts, caller)
        return {"success": True, "data": {"count": count}}
    except ServiceError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"[ENROLL] Enrollment into journey {journey_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/journeys/{journey_id}/runs")
async def list_journey_runs(journey_id: str, caller: Caller = Depends(get_caller), executor: JourneyExecutor = Depends(get_executor)):
    try:
        await load_journey(journey_id, caller, executor)
        runs: List[JourneyRun] = await executor.get_runs(journey_id)
    except ServiceError as e:
        raise to_http_error(e)

    contact_ids = list({run.contact for run in runs})
    contacts = await Contact.find({"_id": {"$in": contact_ids}}).to_list() if contact_ids else []
    contacts_by_id = {contact.id: contact for contact in contacts}

    data = []
    for run in runs:
        item = serialize(run)
        item["contact"] = contact_summary(contacts_by_id.get(run.contact)) or str(run.contact)
        data.append(item)
    return {"success": True, "total": len(data), "data": data}
