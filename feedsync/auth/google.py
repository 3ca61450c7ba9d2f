"""Google OAuth token provider and organization role lookup."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx

from feedsync.config import get_settings
from feedsync.database import get_database
from feedsync.encryption import open_token, seal_token
from feedsync.errors import AuthFailure

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this long before the recorded expiry
EXPIRY_MARGIN = timedelta(minutes=5)
REFRESH_ATTEMPTS = 3


class TokenRefreshError(Exception):
    """Token endpoint refused or failed a refresh."""

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


async def refresh_access_token(refresh_token: str) -> dict:
    """Exchange a refresh token for a new access token."""
    settings = get_settings()
    if not settings.google_client_id or not settings.google_client_secret:
        raise TokenRefreshError("Google OAuth client credentials are not configured", permanent=True)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "refresh_token": refresh_token,
                    "client_id": settings.google_client_id,
                    "client_secret": settings.google_client_secret,
                    "grant_type": "refresh_token",
                },
            )
    except httpx.HTTPError as e:
        raise TokenRefreshError(f"Token refresh request failed: {e}") from e

    if response.status_code != 200:
        try:
            error_code = response.json().get("error")
        except ValueError:
            error_code = None
        logger.error(f"Token refresh failed ({response.status_code}): {response.text}")
        raise TokenRefreshError(
            f"Token refresh failed ({response.status_code}): {error_code or 'unknown error'}",
            permanent=error_code in ("invalid_grant", "invalid_client", "unauthorized_client"),
        )

    return response.json()


async def store_oauth_tokens(
    user_id: int,
    access_token: str,
    refresh_token: str,
    expires_in: Optional[int] = None,
    email: Optional[str] = None,
) -> int:
    """Store (or replace) a user's OAuth tokens."""
    db = await get_database()
    now = datetime.utcnow()

    expiry = None
    if expires_in:
        expiry = (now + timedelta(seconds=expires_in)).isoformat()

    cursor = await db.execute(
        """INSERT INTO oauth_tokens
           (user_id, google_account_email, access_token_encrypted,
            refresh_token_encrypted, token_expiry, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(user_id) DO UPDATE SET
           google_account_email = COALESCE(excluded.google_account_email, google_account_email),
           access_token_encrypted = excluded.access_token_encrypted,
           refresh_token_encrypted = excluded.refresh_token_encrypted,
           token_expiry = excluded.token_expiry,
           updated_at = excluded.updated_at
           RETURNING id""",
        (user_id, email, seal_token(access_token), seal_token(refresh_token), expiry, now.isoformat()),
    )
    row = await cursor.fetchone()
    await db.commit()

    return row["id"]


async def get_oauth_token(user_id: int) -> Optional[dict]:
    """Get the stored token row for a user."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM oauth_tokens WHERE user_id = ?", (user_id,)
    )
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return None


async def get_valid_access_token(user_id: int) -> str:
    """
    Return a currently valid access token for a user, refreshing on demand.

    Transient refresh failures are retried with exponential backoff;
    permanent ones (revoked grant, bad client) raise AuthFailure at once.
    """
    token_data = await get_oauth_token(user_id)
    if not token_data:
        raise AuthFailure(f"No Google token stored for user {user_id}")

    access_token = open_token(token_data["access_token_encrypted"])
    refresh_token = open_token(token_data["refresh_token_encrypted"])

    expiry = token_data.get("token_expiry")
    if not expiry or datetime.utcnow() < datetime.fromisoformat(expiry) - EXPIRY_MARGIN:
        return access_token

    logger.info(f"Refreshing Google token for user {user_id}")

    for attempt in range(REFRESH_ATTEMPTS):
        try:
            new_tokens = await refresh_access_token(refresh_token)
            break
        except TokenRefreshError as e:
            if e.permanent:
                logger.error(f"Token refresh for user {user_id} failed permanently: {e}")
                raise AuthFailure(f"Google authorization revoked or invalid: {e}") from e
            if attempt == REFRESH_ATTEMPTS - 1:
                logger.error(f"Failed to refresh token after {REFRESH_ATTEMPTS} attempts: {e}")
                raise AuthFailure(f"Unable to obtain valid access token: {e}") from e
            wait_time = 2 ** attempt
            logger.warning(f"Token refresh attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
            await asyncio.sleep(wait_time)

    access_token = new_tokens["access_token"]
    await store_oauth_tokens(
        user_id=user_id,
        access_token=access_token,
        refresh_token=new_tokens.get("refresh_token", refresh_token),
        expires_in=new_tokens.get("expires_in"),
    )
    return access_token


async def is_active_org_admin(user_id: int, organization_id: str) -> bool:
    """Whether a user currently holds an active admin role in an organization."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT role, status FROM user_organization_roles
           WHERE user_id = ? AND organization_id = ?""",
        (user_id, organization_id),
    )
    membership = await cursor.fetchone()
    return bool(membership) and membership["role"] == "admin" and membership["status"] == "active"
