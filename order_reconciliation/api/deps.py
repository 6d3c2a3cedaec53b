"""
Dependencies for database sessions, admin access and the job components held on app state.
"""
import secrets
from typing import Generator, Optional
from fastapi import Depends, HTTPException, status, Header, Request
from sqlalchemy.orm import Session

from order_reconciliation import config
from order_reconciliation.config import ReconciliationSettings
from order_reconciliation.jobs.scheduler import ReconciliationScheduler
from order_reconciliation.services.audit import AuditSink
from order_reconciliation.utils import get_logger

logger = get_logger(__name__)

def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()

def check_admin_access(
    x_admin_key: Optional[str] = Header(None)
) -> bool:
    """
    Check the X-Admin-Key header against ADMIN_API_KEY.
    When no key is configured the ops endpoints are open (local development).

    Raises:
        HTTPException: If admin key is missing or invalid
    """
    expected_admin_key = config.ADMIN_API_KEY
    if not expected_admin_key:
        return True

    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected_admin_key):
        logger.warning(
            "Admin access denied",
            provided_key=x_admin_key[:4] + "..." if x_admin_key and len(x_admin_key) > 4 else x_admin_key
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    logger.debug("Admin access granted")
    return True

def get_pagination_params(
    limit: int = 50,
    offset: int = 0
) -> dict:
    """
    Validate and return pagination parameters.

    Args:
        limit: Maximum number of items to return (1-500)
        offset: Number of items to skip (>= 0)

    Raises:
        HTTPException: If parameters are invalid
    """
    if limit < 1 or limit > 500:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Limit must be between 1 and 500"
        )

    if offset < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Offset must be >= 0"
        )

    return {"limit": limit, "offset": offset}

def _state_attr(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciliation job not initialized"
        )
    return value

def get_settings(request: Request) -> ReconciliationSettings:
    return _state_attr(request, "settings")

def get_scheduler(request: Request) -> ReconciliationScheduler:
    return _state_attr(request, "scheduler")

def get_audit(request: Request) -> AuditSink:
    return _state_attr(request, "audit")
