"""
Base domain exception and its FastAPI handler.

Services raise subclasses of DomainError; the request layer turns them into
JSON responses with a stable error code so callers can tell them apart.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base exception for business-rule failures raised by services"""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "DOMAIN_ERROR"

    def __init__(self, detail: str, extra: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.extra = extra or {}
        super().__init__(detail)

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "detail": self.detail}
        if self.extra:
            result.update(self.extra)
        return result


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
