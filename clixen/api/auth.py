"""Dashboard authentication and shared API dependencies"""

import asyncio
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clixen.agent.pipeline import ClixenRuntime
from clixen.config import settings
from clixen.db import get_db
from clixen.db.models import UserProfile
from clixen.services.auth_service import decode_session_token, get_profile_by_id

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_runtime(request: Request) -> ClixenRuntime:
    """The services built at startup, or 503 while the app is not ready."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return runtime


async def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> UserProfile:
    """Dependency to get the account behind a dashboard session token."""
    account_id = None
    if credentials and credentials.credentials:
        account_id = decode_session_token(credentials.credentials)

    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        account = await asyncio.wait_for(
            get_profile_by_id(db, account_id), timeout=settings.store_timeout_seconds,
        )
    except (asyncio.TimeoutError, SQLAlchemyError) as e:
        logger.warning("Account lookup failed for %s: %s", account_id, type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Account store unavailable",
        )
    if not account:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account not found",
        )
    return account
