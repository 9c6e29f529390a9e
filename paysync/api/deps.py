"""API dependencies for authentication and shared components."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from paysync.core.idempotency import IdempotencyStore
from paysync.core.security import Actor, actor_from_token
from paysync.services.reconciliation_service import ReconciliationEngine
from paysync.services.transaction_manager import ConsistencyTransactionManager

# Security scheme
security = HTTPBearer()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Read session from the application's session factory."""
    async with request.app.state.session_factory() as session:
        yield session


async def get_current_actor(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """Actor from the bearer token; kept on ``request.state`` for error rendering."""
    actor = actor_from_token(credentials.credentials)
    request.state.actor = actor
    return actor


def get_manager(request: Request) -> ConsistencyTransactionManager:
    return request.app.state.manager


def get_reconciliation(request: Request) -> ReconciliationEngine:
    return request.app.state.reconciliation


def get_idempotency_store(request: Request) -> IdempotencyStore:
    return request.app.state.idempotency_store


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Manager = Annotated[ConsistencyTransactionManager, Depends(get_manager)]
Reconciliation = Annotated[ReconciliationEngine, Depends(get_reconciliation)]
IdempotencyCache = Annotated[IdempotencyStore, Depends(get_idempotency_store)]
