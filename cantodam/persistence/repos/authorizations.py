from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cantodam.domain.models import AccountAuthorization, Authorization


async def get_authorization(session: AsyncSession, authorization_id: str) -> Authorization | None:
    result = await session.execute(
        select(Authorization).where(Authorization.authorization_id == authorization_id)
    )
    return result.scalar_one_or_none()


async def upsert_authorization(session: AsyncSession, authorization: Authorization) -> Authorization:
    # merge() updates the existing row when the id is already stored.
    return await session.merge(authorization)


async def delete_authorization(session: AsyncSession, authorization_id: str) -> bool:
    result = await session.execute(
        delete(Authorization).where(Authorization.authorization_id == authorization_id)
    )
    return bool(result.rowcount)


async def get_account_authorization(
    session: AsyncSession, account_identifier: str
) -> AccountAuthorization | None:
    result = await session.execute(
        select(AccountAuthorization).where(AccountAuthorization.account_identifier == account_identifier)
    )
    return result.scalar_one_or_none()


async def count_account_bindings(session: AsyncSession, authorization_id: str) -> int:
    result = await session.execute(
        select(AccountAuthorization.account_identifier).where(
            AccountAuthorization.authorization_id == authorization_id
        )
    )
    return len(result.scalars().all())


async def delete_account_authorization(session: AsyncSession, account_identifier: str) -> bool:
    result = await session.execute(
        delete(AccountAuthorization).where(AccountAuthorization.account_identifier == account_identifier)
    )
    return bool(result.rowcount)
