import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from pymongo import DESCENDING

from donor_crm.api.deps import get_caller, serialize, to_http_error
from donor_crm.models.report import Report, ReportComponent, ReportDefinition, ReportFilters, ReportType
from donor_crm.services.access import Caller, scope_query, to_object_id
from donor_crm.services.delays import utcnow
from donor_crm.services.errors import AuthorizationError, NotFoundError, ServiceError
from donor_crm.services.report_engine import ReportEngine
from donor_crm.services.report_export import export_report

logger = logging.getLogger(__name__)
router = APIRouter()


class ReportCreate(BaseModel):
    name: str = ""
    type: Optional[ReportType] = None
    organization: Optional[str] = None
    filters: ReportFilters = Field(default_factory=ReportFilters)
    fields: List[str] = Field(default_factory=list)
    components: List[ReportComponent] = Field(default_factory=list)


class ReportUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[ReportType] = None
    filters: Optional[ReportFilters] = None
    fields: Optional[List[str]] = None
    components: Optional[List[ReportComponent]] = None


async def load_report(report_id: str, caller: Caller) -> Report:
    object_id = to_object_id(report_id)
    report = await Report.get(object_id) if object_id else None
    if not report:
        raise NotFoundError("Report not found")
    if not caller.can_access(report.organization):
        raise AuthorizationError("Not authorized to access this report")
    return report


def definition_of(report: Report) -> ReportDefinition:
    return ReportDefinition(type=report.type, filters=report.filters, fields=report.fields, components=report.components)


@router.get("/reports")
async def list_reports(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    type: Optional[str] = None,
    organization: Optional[str] = None,
    caller: Caller = Depends(get_caller),
):
    try:
        query: Dict[str, Any] = {}
        if type and type != "all":
            query["type"] = type
        organization_id = to_object_id(organization)
        if organization_id is not None:
            query["organization"] = organization_id
        if search:
            query["name"] = {"$regex": re.escape(search), "$options": "i"}
        query = scope_query(caller, query)

        reports = await Report.find(query).sort([("created_at", DESCENDING)]).skip((page - 1) * limit).limit(limit).to_list()
        total = await Report.find(query).count()
        return {"success": True, "total": total, "data": [serialize(report) for report in reports]}
    except Exception as e:
        logger.error(f"Error listing reports: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/reports/run")
async def run_adhoc_report(definition: ReportDefinition, caller: Caller = Depends(get_caller)):
    """Run an unsaved definition. Nothing is persisted."""
    try:
        results = await ReportEngine(caller).run_report(definition)
        return {"success": True, "data": [result.model_dump() for result in results]}
    except Exception as e:
        logger.error(f"[REPORT] Ad hoc run failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/reports/{report_id}")
async def get_report(report_id: str, caller: Caller = Depends(get_caller)):
    try:
        report = await load_report(report_id, caller)
        return {"success": True, "data": serialize(report)}
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/reports", status_code=201)
async def create_report(payload: ReportCreate, caller: Caller = Depends(get_caller)):
    scoped = scope_query(caller, {"organization": to_object_id(payload.organization)})
    organization_id = to_object_id(scoped.get("organization"))
    if not payload.name.strip() or not payload.type or organization_id is None:
        raise HTTPException(status_code=400, detail="Name, type, and organization are required")

    try:
        report = Report(
            name=payload.name.strip(),
            type=payload.type,
            organization=organization_id,
            filters=payload.filters,
            fields=payload.fields,
            components=payload.components,
            created_by=caller.user_id,
        )
        await report.insert()
        logger.info(f"[REPORT] Created report {report.id} '{report.name}' ({report.type})")
        return {"success": True, "data": serialize(report)}
    except Exception as e:
        logger.error(f"Error creating report: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error creating report: {str(e)}")


@router.put("/reports/{report_id}")
async def update_report(report_id: str, payload: ReportUpdate, caller: Caller = Depends(get_caller)):
    try:
        report = await load_report(report_id, caller)
        for field in payload.model_dump(exclude_unset=True, exclude_none=True):
            setattr(report, field, getattr(payload, field))
        report.updated_at = utcnow()
        await report.save()
        return {"success": True, "data": serialize(report)}
    except ServiceError as e:
        raise to_http_error(e)


@router.delete("/reports/{report_id}")
async def delete_report(report_id: str, caller: Caller = Depends(get_caller)):
    try:
        report = await load_report(report_id, caller)
        await report.delete()
        logger.info(f"[REPORT] Deleted report {report.id}")
        return {"success": True, "message": "Report deleted"}
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/reports/{report_id}/run")
async def run_saved_report(report_id: str, caller: Caller = Depends(get_caller)):
    try:
        report = await load_report(report_id, caller)
        results = await ReportEngine(caller).run_report(definition_of(report))
        return {"success": True, "data": [result.model_dump() for result in results]}
    except ServiceError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"[REPORT] Run of report {report_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/reports/{report_id}/export")
async def export_saved_report(report_id: str, format: str = Query("csv"), caller: Caller = Depends(get_caller)):
    try:
        report = await load_report(report_id, caller)
        exported = await export_report(report, caller, format)
    except ServiceError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"[REPORT] Export of report {report_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )
