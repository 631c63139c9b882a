import logging
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request

from donor_crm.services.access import Caller
from donor_crm.services.errors import AuthorizationError, InvalidRequestError, NotFoundError, ServiceError
from donor_crm.services.journey_executor import JourneyExecutor
from donor_crm.services.notifications import build_notification_sender

logger = logging.getLogger(__name__)


async def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_organization_id: Optional[str] = Header(None),
) -> Caller:
    """Caller identity as forwarded by the gateway in front of the API."""
    return Caller(user_id=x_user_id, role=(x_user_role or "user").lower(), organization_id=x_organization_id or None)


def get_executor(request: Request) -> JourneyExecutor:
    executor = getattr(request.app.state, "executor", None)
    if executor is None:
        executor = JourneyExecutor(build_notification_sender())
        request.app.state.executor = executor
    return executor


def to_http_error(error: ServiceError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, AuthorizationError):
        return HTTPException(status_code=403, detail=error.message)
    if isinstance(error, InvalidRequestError):
        return HTTPException(status_code=400, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


def serialize(document) -> Dict[str, Any]:
    return document.model_dump(mode="json", exclude={"revision_id"})
