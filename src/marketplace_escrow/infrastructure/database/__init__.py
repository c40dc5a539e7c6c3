"""Database infrastructure — engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    build_session_factory,
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    Base,
    Offer,
    Order,
    TimelineEvent,
)
from marketplace_escrow.infrastructure.database.repositories import (
    OfferRepository,
    OrderRepository,
    TimelineRepository,
)

__all__ = [
    "Base",
    "Offer",
    "Order",
    "TimelineEvent",
    "OfferRepository",
    "OrderRepository",
    "TimelineRepository",
    "build_session_factory",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
