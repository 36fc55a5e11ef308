"""Authentication module for Auth0 JWT validation."""
import logging

import httpx
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from db.session import get_async_session, get_session_factory
from models.user import User

logger = logging.getLogger(__name__)


# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)

# Cache for JWKS client (reuse across requests)
_jwks_clients: dict[str, PyJWKClient] = {}

DEV_AUTH0_ID = "dev|local-development-user"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_jwks_client(settings: Settings) -> PyJWKClient:
    """Get or create a cached JWKS client for the given settings."""
    if settings.auth0_jwks_url not in _jwks_clients:
        _jwks_clients[settings.auth0_jwks_url] = PyJWKClient(
            settings.auth0_jwks_url,
            cache_jwk_set=True,
            lifespan=3600,  # Cache keys for 1 hour
        )
    return _jwks_clients[settings.auth0_jwks_url]


def decode_jwt(token: str, settings: Settings) -> dict:
    """
    Decode and validate a JWT token from Auth0.

    Raises:
        HTTPException: If token is invalid, expired, or has wrong audience/issuer.
    """
    try:
        jwks_client = get_jwks_client(settings)
        signing_key = jwks_client.get_signing_key_from_jwt(token)

        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=settings.auth0_audience,
            issuer=settings.auth0_issuer,
        )

    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidAudienceError:
        raise _unauthorized("Invalid audience")
    except jwt.InvalidIssuerError:
        raise _unauthorized("Invalid issuer")
    except jwt.PyJWTError as e:
        # Log full details for debugging (server-side only)
        logger.warning("JWT validation failed: %s", e, exc_info=True)
        raise _unauthorized("Invalid token")
    except httpx.HTTPError as e:
        # Log full details for debugging (server-side only)
        logger.error("Failed to fetch JWKS from Auth0: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not validate credentials",
        )


async def get_or_create_user(
    db: AsyncSession,
    auth0_id: str,
    email: str | None = None,
    name: str | None = None,
    avatar_url: str | None = None,
) -> User:
    """
    Get existing user or create new one from Auth0 claims.

    Handles race conditions where multiple concurrent requests may try to create
    the same user simultaneously. If an IntegrityError occurs (due to unique
    constraint on auth0_id), the function rolls back and fetches the existing user.

    Profile fields (email, name, avatar) are refreshed when the claims change.

    Note: Uses flush(), not commit. Session generator handles commit at request end.
    """
    result = await db.execute(select(User).where(User.auth0_id == auth0_id))
    user = result.scalar_one_or_none()

    if user is None:
        user = User(auth0_id=auth0_id, email=email, name=name, avatar_url=avatar_url)
        db.add(user)
        try:
            await db.flush()
        except IntegrityError:
            # Race condition: another request created the user between our SELECT
            # and INSERT. Rollback and fetch the existing user.
            await db.rollback()
            result = await db.execute(select(User).where(User.auth0_id == auth0_id))
            user = result.scalar_one()

    changed = False
    for field, value in (("email", email), ("name", name), ("avatar_url", avatar_url)):
        if value and getattr(user, field) != value:
            setattr(user, field, value)
            changed = True
    if changed:
        await db.flush()

    return user


async def get_or_create_dev_user(db: AsyncSession) -> User:
    """Get or create a development user for DEV_MODE."""
    return await get_or_create_user(
        db,
        auth0_id=DEV_AUTH0_ID,
        email="dev@localhost",
        name="Local Developer",
    )


async def authenticate(
    credentials: HTTPAuthorizationCredentials | None,
    db: AsyncSession,
    settings: Settings,
) -> User:
    """
    Validate the bearer token and return its user.

    In DEV_MODE, bypasses auth and returns a local development user.

    Raises:
        HTTPException: 401 if there is no valid session.
    """
    if settings.dev_mode:
        return await get_or_create_dev_user(db)

    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_jwt(credentials.credentials, settings)

    auth0_id = payload.get("sub")
    if not auth0_id:
        raise _unauthorized("Invalid token: missing sub claim")

    return await get_or_create_user(
        db,
        auth0_id=auth0_id,
        email=payload.get("email"),
        name=payload.get("name"),
        avatar_url=payload.get("picture"),
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> User:
    """Dependency that validates the bearer token and returns the current user."""
    return await authenticate(credentials, db, settings)


async def get_current_user_for_stream(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> User:
    """
    Like get_current_user, but for long-lived responses.

    The user is resolved in a short session that is committed and closed before
    the endpoint returns. The request session would otherwise stay open, holding
    a pooled connection, until a server-sent events stream ends.
    """
    async with session_factory() as db:
        try:
            user = await authenticate(credentials, db, settings)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return user
