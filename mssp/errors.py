"""
Application error types and their HTTP mapping.

Services raise these for operational failures (bad input, missing records,
upstream outages). `register_exception_handlers` turns them into JSON
responses of the form {"error": code, "message": ..., "details": ...}.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for expected, operational errors"""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        is_operational: bool = True,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details or {}
        self.is_operational = is_operational

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, **kwargs)


class AuthorizationError(AppError):
    status_code = 403
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Insufficient permissions", required_role: Optional[str] = None,
                 current_role: Optional[str] = None):
        details = {}
        if required_role:
            details["requiredRole"] = required_role
        if current_role:
            details["currentRole"] = current_role
        super().__init__(message, details=details)


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any = None):
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        else:
            message = f"{resource} not found"
        super().__init__(message, details={"resource": resource})


class DuplicateError(AppError):
    status_code = 409
    code = "DUPLICATE_ERROR"


class BusinessLogicError(AppError):
    status_code = 422
    code = "BUSINESS_LOGIC_ERROR"

    def __init__(self, rule: str, **kwargs):
        super().__init__(f"Business rule violation: {rule}", **kwargs)


class ConfigurationError(AppError):
    status_code = 500
    code = "CONFIGURATION_ERROR"


class ExternalServiceError(AppError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str, **kwargs):
        super().__init__(f"{service}: {message}", **kwargs)
        self.details.setdefault("service", service)


class OperationTimeoutError(AppError):
    status_code = 504
    code = "TIMEOUT_ERROR"


def is_operational_error(exc: BaseException) -> bool:
    """True for expected failures; False for programming errors"""
    return isinstance(exc, AppError) and exc.is_operational


def register_exception_handlers(app: FastAPI):
    """Install JSON handlers for AppError and IntegrityError"""

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500 or not is_operational_error(exc):
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}",
                         exc_info=None if is_operational_error(exc) else exc)
        else:
            logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(IntegrityError)
    async def handle_integrity_error(request: Request, exc: IntegrityError):
        logger.warning(f"{request.method} {request.url.path} integrity error: {exc.orig}")
        return JSONResponse(
            status_code=409,
            content={"error": DuplicateError.code, "message": "Record conflicts with existing data"},
        )
