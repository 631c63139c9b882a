from typing import List, Optional


class ServiceError(Exception):
    """Base class for errors the services report back to callers."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ServiceError):
    pass


class InvalidRequestError(ServiceError, ValueError):
    def __init__(self, message: str, invalid_ids: Optional[List[str]] = None):
        super().__init__(message)
        self.invalid_ids = invalid_ids or []


class AuthorizationError(ServiceError, PermissionError):
    pass


class ReportExportError(InvalidRequestError):
    pass
