"""Credential store for per-merchant platform connections.

A thin persistence facade over `platform_connections`:
- get_credentials / find_credentials: read the current token set
- update_credentials: apply a patch as a single UPDATE statement
- revoke_credentials: soft revoke by clearing tokens (the row stays)

Every write is one statement per (merchant, platform) row, so a token refresh
can never be interleaved with a stale read-modify-write from another request.
Connection state is computed from the row on read and never stored.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_engine.models import PlatformConnection
from commerce_engine.services.errors import CredentialsNotFound
from commerce_engine.services.platforms import Platform, is_connected, missing_credentials, strip_bearer

logger = logging.getLogger("uvicorn.error")

CREDENTIAL_FIELDS = frozenset(
    {
        "store_id",
        "store_url",
        "access_token",
        "refresh_token",
        "token_expires_at",
        "manager_token",
        "scope",
    }
)
TOKEN_FIELDS = ("access_token", "refresh_token", "token_expires_at", "manager_token")

SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "access_token",
        "refresh_token",
        "manager_token",
        "x-manager-token",
        "access-token",
        "token",
        "secret",
        "client_secret",
        "signature",
        "password",
        "code",
    }
)


@dataclass
class Credentials:
    """Snapshot of one merchant's credentials on one platform."""

    merchant_id: int
    platform: Platform
    store_id: str | None = None
    store_url: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    manager_token: str | None = None
    scope: str | None = None

    def as_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in CREDENTIAL_FIELDS}

    @property
    def connected(self) -> bool:
        return is_connected(self.platform, self.as_fields())

    @property
    def missing(self) -> list[str]:
        return missing_credentials(self.platform, self.as_fields())

    def __repr__(self) -> str:
        return (
            f"Credentials(merchant_id={self.merchant_id}, platform={self.platform.value}, "
            f"store_id={self.store_id}, connected={self.connected})"
        )


def mask_sensitive(data: Any) -> Any:
    """Return a copy of `data` with secret-looking values replaced by "***"."""
    if isinstance(data, Mapping):
        masked: dict[str, Any] = {}
        for key, value in data.items():
            if str(key).lower() in SENSITIVE_KEYS and value:
                masked[key] = "***"
            else:
                masked[key] = mask_sensitive(value)
        return masked
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    return data


def _to_credentials(row: PlatformConnection) -> Credentials:
    return Credentials(
        merchant_id=row.merchant_id,
        platform=row.platform,
        store_id=row.store_id,
        store_url=row.store_url,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=row.token_expires_at,
        manager_token=row.manager_token,
        scope=row.scope,
    )


async def find_credentials(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
) -> Credentials | None:
    """Get credentials or None if the merchant never connected this platform."""
    result = await session.execute(
        select(PlatformConnection).where(
            PlatformConnection.merchant_id == merchant_id,
            PlatformConnection.platform == platform,
        )
    )
    row = result.scalar_one_or_none()
    return _to_credentials(row) if row else None


async def get_credentials(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
) -> Credentials:
    """Get credentials.

    Raises:
        CredentialsNotFound: No connection row for this merchant/platform.
    """
    creds = await find_credentials(session, merchant_id, platform)
    if creds is None:
        raise CredentialsNotFound(
            f"No {platform.value} credentials for merchant {merchant_id}",
            platform=platform.value,
            merchant_id=merchant_id,
        )
    return creds


def _clean_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - CREDENTIAL_FIELDS
    if unknown:
        raise ValueError(f"Unknown credential fields: {sorted(unknown)}")
    cleaned = dict(patch)
    for name in ("access_token", "refresh_token", "manager_token"):
        if cleaned.get(name) is not None:
            cleaned[name] = strip_bearer(cleaned[name])
    return cleaned


async def update_credentials(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    patch: Mapping[str, Any],
) -> None:
    """Apply `patch` to the merchant's connection, creating the row if needed.

    The write is a single UPDATE (or INSERT for a first connection), so readers
    see either the old token set or the new one, never a mix.
    """
    values = _clean_patch(patch)
    if not values:
        return

    stmt = (
        update(PlatformConnection)
        .where(
            PlatformConnection.merchant_id == merchant_id,
            PlatformConnection.platform == platform,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount:
        return

    try:
        async with session.begin_nested():
            session.add(PlatformConnection(merchant_id=merchant_id, platform=platform, **values))
    except IntegrityError:
        # A concurrent first connection created the row; apply the patch to it.
        result = await session.execute(stmt)
        if not result.rowcount:
            raise
    logger.info(f"Credentials stored for merchant={merchant_id} platform={platform.value}")


async def revoke_credentials(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
) -> bool:
    """Clear tokens so the connection derives as disconnected. Returns True if a row was found."""
    result = await session.execute(
        update(PlatformConnection)
        .where(
            PlatformConnection.merchant_id == merchant_id,
            PlatformConnection.platform == platform,
        )
        .values(**{name: None for name in TOKEN_FIELDS})
        .execution_options(synchronize_session=False)
    )
    revoked = bool(result.rowcount)
    if revoked:
        logger.info(f"Credentials revoked for merchant={merchant_id} platform={platform.value}")
    return revoked


async def find_merchant_id_by_store(
    session: AsyncSession,
    platform: Platform,
    store_id: str,
) -> int | None:
    """Resolve which merchant owns an external store id."""
    result = await session.execute(
        select(PlatformConnection.merchant_id).where(
            PlatformConnection.platform == platform,
            PlatformConnection.store_id == store_id,
        )
    )
    return result.scalar_one_or_none()


async def list_connected(session: AsyncSession, platform: Platform | None = None) -> list[Credentials]:
    """All credential rows whose derived state is connected."""
    query = select(PlatformConnection).where(PlatformConnection.access_token.is_not(None))
    if platform is not None:
        query = query.where(PlatformConnection.platform == platform)
    rows = (await session.execute(query.order_by(PlatformConnection.id))).scalars().all()
    return [creds for creds in map(_to_credentials, rows) if creds.connected]
