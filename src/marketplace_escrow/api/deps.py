"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the session
factory, the payment processor, the idempotency store and the services
built from them. Tests override the leaf providers.
"""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.payment_protocol import PaymentProcessor
from marketplace_escrow.infrastructure.database.engine import get_session_factory
from marketplace_escrow.infrastructure.locks import EntityLockRegistry, get_lock_registry
from marketplace_escrow.infrastructure.redis_client import IdempotencyStore, get_redis_or_none
from marketplace_escrow.payments import get_payment_processor
from marketplace_escrow.services.offer_service import OfferService
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.settlement_service import SettlementCoordinator


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the session factory; services open one transaction per transition."""
    return get_session_factory()


def get_processor() -> PaymentProcessor:
    """Provide the configured payment processor."""
    return get_payment_processor()


def get_locks() -> EntityLockRegistry:
    """Provide the process-wide entity lock registry."""
    return get_lock_registry()


def get_idempotency_store(
    settings: Settings = Depends(get_app_settings),
) -> IdempotencyStore | None:
    """Provide the Redis idempotency store, or None when Redis is unavailable."""
    redis = get_redis_or_none()
    if redis is None:
        return None
    return IdempotencyStore(
        redis,
        ttl_seconds=settings.redis_idempotency_ttl_seconds,
        wait_seconds=settings.idempotency_wait_seconds,
    )


def get_settlement(
    processor: PaymentProcessor = Depends(get_processor),
    settings: Settings = Depends(get_app_settings),
) -> SettlementCoordinator:
    """Provide a settlement coordinator over the configured processor."""
    return SettlementCoordinator(processor, settings)


def get_order_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    settlement: SettlementCoordinator = Depends(get_settlement),
    locks: EntityLockRegistry = Depends(get_locks),
    settings: Settings = Depends(get_app_settings),
    idempotency: IdempotencyStore | None = Depends(get_idempotency_store),
) -> OrderService:
    """Provide an OrderService."""
    return OrderService(session_factory, settlement, locks, settings, idempotency)


def get_offer_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    settlement: SettlementCoordinator = Depends(get_settlement),
    orders: OrderService = Depends(get_order_service),
    locks: EntityLockRegistry = Depends(get_locks),
    settings: Settings = Depends(get_app_settings),
    idempotency: IdempotencyStore | None = Depends(get_idempotency_store),
) -> OfferService:
    """Provide an OfferService wired to the order service for accepted offers."""
    return OfferService(session_factory, settlement, orders, locks, settings, idempotency)
