from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cantodam.domain.models import AccountAuthorization, Authorization
from cantodam.persistence.repos import authorizations as repo


logger = logging.getLogger(__name__)


class TokenStore:
    """Durable storage for OAuth grants and their account bindings.

    Every method runs in its own session and commits before returning, so the
    returned ORM objects are detached snapshots.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_authorization(self, authorization_id: str) -> Authorization | None:
        async with self._session_factory() as session:
            return await repo.get_authorization(session, authorization_id)

    async def save_authorization(self, authorization: Authorization) -> Authorization:
        async with self._session_factory() as session:
            merged = await repo.upsert_authorization(session, authorization)
            await session.commit()
            return merged

    async def delete_authorization(self, authorization_id: str) -> bool:
        async with self._session_factory() as session:
            deleted = await repo.delete_authorization(session, authorization_id)
            await session.commit()
            return deleted

    async def find_account_authorization(self, account_identifier: str) -> AccountAuthorization | None:
        async with self._session_factory() as session:
            return await repo.get_account_authorization(session, account_identifier)

    async def get_authorization_for_account(self, account_identifier: str) -> Authorization | None:
        async with self._session_factory() as session:
            binding = await repo.get_account_authorization(session, account_identifier)
            if binding is None:
                return None
            return await repo.get_authorization(session, binding.authorization_id)

    async def bind_account(self, account_identifier: str, authorization_id: str) -> AccountAuthorization:
        # Point the account at a new grant and drop the grant it superseded.
        async with self._session_factory() as session:
            binding = await repo.get_account_authorization(session, account_identifier)
            superseded: str | None = None
            if binding is None:
                binding = AccountAuthorization(
                    account_identifier=account_identifier,
                    authorization_id=authorization_id,
                )
                session.add(binding)
            elif binding.authorization_id != authorization_id:
                superseded = binding.authorization_id
                binding.authorization_id = authorization_id
            await session.flush()
            if superseded and await repo.count_account_bindings(session, superseded) == 0:
                await repo.delete_authorization(session, superseded)
                logger.info(
                    "canto_authorization_superseded account=%s authorization_id=%s",
                    account_identifier,
                    superseded,
                )
            await session.commit()
            return binding

    async def remove_account(self, account_identifier: str) -> bool:
        # Remove the binding for a deleted account together with its grant.
        async with self._session_factory() as session:
            binding = await repo.get_account_authorization(session, account_identifier)
            if binding is None:
                return False
            authorization_id = binding.authorization_id
            await repo.delete_account_authorization(session, account_identifier)
            await session.flush()
            if await repo.count_account_bindings(session, authorization_id) == 0:
                await repo.delete_authorization(session, authorization_id)
            await session.commit()
        logger.info("canto_account_authorization_removed account=%s", account_identifier)
        return True
