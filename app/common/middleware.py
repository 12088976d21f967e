"""
Clinic context and security headers for every request
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import UUID
import logging

logger = logging.getLogger(__name__)

CLINIC_HEADER = "X-Clinic-ID"


def _bad_clinic_header(detail: str) -> JSONResponse:
    return JSONResponse({"detail": detail}, status_code=status.HTTP_400_BAD_REQUEST)


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Valida el header X-Clinic-ID y deja el UUID en `request.state.clinic_id`.

    La documentación, `/health` y los endpoints cron (autenticados con su propio
    secreto y con alcance opcional por query) no llevan clínica.
    """

    EXEMPT_PREFIXES = (
        "/docs",
        "/redoc",
        "/openapi.json",
        "/health",
        "/refills/cron",
        "/subscriptions/cron",
    )

    def _is_exempt(self, request: Request) -> bool:
        path = request.url.path
        return request.method == "OPTIONS" or path == "/" or path.startswith(self.EXEMPT_PREFIXES)

    async def dispatch(self, request: Request, call_next):
        if self._is_exempt(request):
            return await call_next(request)

        raw = request.headers.get(CLINIC_HEADER)
        if not raw:
            return _bad_clinic_header("Falta el header X-Clinic-ID")
        try:
            clinic_id = UUID(raw)
        except ValueError:
            return _bad_clinic_header("X-Clinic-ID debe ser un UUID válido")

        request.state.clinic_id = clinic_id
        logger.debug(f"[TENANT] {request.method} {request.url.path} for clinic {clinic_id}")

        response = await call_next(request)
        response.headers[CLINIC_HEADER] = str(clinic_id)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Cabeceras de seguridad estándar en todas las respuestas."""

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
