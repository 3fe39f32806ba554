"""FastAPI dependencies shared by the routers."""
import secrets

import structlog
from fastapi import HTTPException, Request, status

from entitlements.container import ServiceContainer

logger = structlog.get_logger(__name__)


def get_container(request: Request) -> ServiceContainer:
    """Return the container built at application startup."""
    return request.app.state.container


def require_admin(request: Request) -> None:
    """
    Guard for operator routes.

    The configured header must carry the admin API key. Without a configured
    key every admin request is refused.

    Raises:
        HTTPException: 403 if admin access is disabled, 401 on a wrong key
    """
    settings = get_container(request).settings
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is disabled"
        )

    provided = request.headers.get(settings.api_key_header) or ""
    if not secrets.compare_digest(provided.encode(), settings.admin_api_key.encode()):
        logger.warning("admin_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key"
        )


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, then X-Real-IP, then the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None
