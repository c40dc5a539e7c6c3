"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from marketplace_escrow.infrastructure.database.orm_models import (
    Offer,
    Order,
    TimelineEvent,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import EventType, OfferStatus, OrderStatus


class OfferRepository:
    """Data access for offers."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, offer: Offer) -> Offer:
        """Insert a new offer."""
        self._session.add(offer)
        await self._session.flush()
        return offer

    async def get_by_id(self, offer_id: uuid.UUID) -> Offer | None:
        """Fetch an offer by its UUID."""
        result = await self._session.execute(select(Offer).where(Offer.id == offer_id))
        return result.scalar_one_or_none()

    async def get_by_buyer(self, buyer_id: str) -> list[Offer]:
        """Fetch all offers made by a buyer, newest first."""
        result = await self._session.execute(
            select(Offer).where(Offer.buyer_id == buyer_id).order_by(Offer.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_by_seller(self, seller_id: str) -> list[Offer]:
        """Fetch all offers received by a seller, newest first."""
        result = await self._session.execute(
            select(Offer).where(Offer.seller_id == seller_id).order_by(Offer.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_expirable_ids(
        self,
        statuses: list[OfferStatus],
        now: datetime,
    ) -> list[uuid.UUID]:
        """Return ids of offers in one of statuses whose expiry is at or before now."""
        result = await self._session.execute(
            select(Offer.id)
            .where(Offer.status.in_([s.value for s in statuses]))
            .where(Offer.expires_at <= now)
            .order_by(Offer.expires_at.asc())
        )
        return list(result.scalars().all())

    async def update_status(self, offer: Offer, new_status: OfferStatus) -> Offer:
        """Update the status of an offer (call AFTER state machine validation)."""
        offer.status = new_status.value
        offer.updated_at = datetime.now(UTC)
        await self._session.flush()
        return offer


class OrderRepository:
    """Data access for orders."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order: Order) -> Order:
        """Insert a new order."""
        self._session.add(order)
        await self._session.flush()
        return order

    async def get_by_id(self, order_id: uuid.UUID) -> Order | None:
        """Fetch an order by its UUID."""
        result = await self._session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_by_buyer(self, buyer_id: str) -> list[Order]:
        """Fetch all orders placed by a buyer, newest first."""
        result = await self._session.execute(
            select(Order).where(Order.buyer_id == buyer_id).order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_by_seller(self, seller_id: str) -> list[Order]:
        """Fetch all orders sold by a seller, newest first."""
        result = await self._session.execute(
            select(Order).where(Order.seller_id == seller_id).order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(self, order: Order, new_status: OrderStatus) -> Order:
        """Update the status of an order (call AFTER state machine validation)."""
        order.status = new_status.value
        order.updated_at = datetime.now(UTC)
        await self._session.flush()
        return order


class TimelineRepository:
    """Data access for the append-only order timeline."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        order_id: uuid.UUID,
        event_type: EventType,
        old_status: OrderStatus | None,
        new_status: OrderStatus,
        performed_by: str = "system",
        event_data: dict | None = None,
    ) -> TimelineEvent:
        """Append a new timeline event. This is the ONLY write operation allowed."""
        result = await self._session.execute(
            select(func.coalesce(func.max(TimelineEvent.sequence), 0)).where(
                TimelineEvent.order_id == order_id
            )
        )
        evt = TimelineEvent(
            order_id=order_id,
            sequence=int(result.scalar_one()) + 1,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            performed_by=performed_by,
            event_data=event_data or {},
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_order(self, order_id: uuid.UUID) -> list[TimelineEvent]:
        """Fetch all events for an order in sequence order."""
        result = await self._session.execute(
            select(TimelineEvent)
            .where(TimelineEvent.order_id == order_id)
            .order_by(TimelineEvent.sequence.asc())
        )
        return list(result.scalars().all())

    async def count_by_type(self, order_id: uuid.UUID, event_type: EventType) -> int:
        """Count events of one type recorded for an order."""
        result = await self._session.execute(
            select(func.count())
            .select_from(TimelineEvent)
            .where(TimelineEvent.order_id == order_id)
            .where(TimelineEvent.event_type == event_type.value)
        )
        return int(result.scalar_one())
