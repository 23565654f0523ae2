"""
Tenant context and response hardening middleware.

Every invoice route is tenant-scoped; the only tenant-free routes are the
health check and the interactive docs.
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import UUID
import logging

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Company-ID"


def _tenant_error(code: str, detail: str) -> JSONResponse:
    # Same body shape as DomainError.to_dict()
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"code": code, "detail": detail}
    )


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Reads the tenant from the X-Company-ID header into request.state.tenant_id.

    Requests without a valid UUID in the header are answered with 400 before
    reaching any route.
    """

    EXEMPT_PATHS = {"/", "/health", "/openapi.json"}
    EXEMPT_PREFIXES = ("/docs", "/redoc")

    def _is_exempt(self, path: str) -> bool:
        return path in self.EXEMPT_PATHS or path.startswith(self.EXEMPT_PREFIXES)

    async def dispatch(self, request: Request, call_next):
        # CORS preflight carries no custom headers
        if request.method == "OPTIONS" or self._is_exempt(request.url.path):
            return await call_next(request)

        tenant_header = request.headers.get(TENANT_HEADER)
        if not tenant_header:
            return _tenant_error("TENANT_REQUIRED", f"Falta el header {TENANT_HEADER}")

        try:
            tenant_id = UUID(tenant_header)
        except ValueError:
            logger.info(f"Rejected {request.method} {request.url.path}: malformed tenant {tenant_header!r}")
            return _tenant_error("INVALID_TENANT", f"{TENANT_HEADER} debe ser un UUID válido")

        request.state.tenant_id = tenant_id
        response = await call_next(request)
        response.headers["X-Tenant-ID"] = str(tenant_id)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the standard hardening headers to every response"""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(self.HEADERS)
        return response
