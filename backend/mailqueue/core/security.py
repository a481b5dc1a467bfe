"""Service-credential authentication for trigger endpoints"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from mailqueue.core.config import settings

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_service_token(
    request: Request,
    authorization: Optional[str] = Header(None)
) -> None:
    """Dependency: require `Authorization: Bearer <SERVICE_ROLE_KEY>`"""
    if not settings.SERVICE_ROLE_KEY:
        security_logger.error("SERVICE_ROLE_KEY is not set; rejecting trigger request")
        raise HTTPException(503, "Service credential not configured")

    token = _extract_bearer(authorization)
    if token is None or not hmac.compare_digest(token.encode("utf-8"), settings.SERVICE_ROLE_KEY.encode("utf-8")):
        security_logger.warning(
            f"Rejected trigger request - "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(401, "Invalid or missing service credential")


def log_api_access(request: Request, status_code: int, error: Optional[str] = None) -> None:
    """Log one API request"""
    client_ip = request.client.host if request.client else "unknown"
    message = f"{request.method} {request.url.path} - {status_code} - IP: {client_ip}"
    if error:
        api_access_logger.warning(f"{message} - Error: {error}")
    else:
        api_access_logger.info(message)
