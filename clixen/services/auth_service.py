"""Authentication service - dashboard session JWT handling"""

from datetime import datetime, timedelta
from typing import Optional
import uuid

from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from clixen.config import settings
from clixen.db.models import UserProfile


def create_session_token(account_id: str, expires_minutes: Optional[int] = None) -> str:
    """Create a JWT session token for the dashboard"""
    expire = datetime.utcnow() + timedelta(
        minutes=expires_minutes or settings.session_token_expire_minutes
    )
    to_encode = {
        "sub": account_id,
        "exp": expire,
        "iat": datetime.utcnow(),
        "jti": str(uuid.uuid4()),  # Unique token ID
    }
    return jwt.encode(
        to_encode,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm
    )


def decode_session_token(token: str) -> Optional[str]:
    """Decode a session JWT and return the account ID"""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm]
        )
        account_id: str = payload.get("sub")
        if account_id is None:
            return None
        return account_id
    except JWTError:
        return None


async def get_profile_by_id(db: AsyncSession, account_id: str) -> Optional[UserProfile]:
    """Get a profile by account ID"""
    result = await db.execute(
        select(UserProfile).where(UserProfile.id == account_id)
    )
    return result.scalar_one_or_none()
