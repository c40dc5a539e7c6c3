"""Ledger Service — read side of the order timeline.

Writes happen inside the order transitions (TimelineRepository.append).
This service reads the timeline back and checks that replaying it
reproduces the stored order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import EventType
from marketplace_escrow.domain.exceptions import LedgerInconsistencyError, OrderNotFoundError
from marketplace_escrow.domain.timeline import OrderProjection, TimelineEntry, replay
from marketplace_escrow.infrastructure.database.repositories import (
    OrderRepository,
    TimelineRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.infrastructure.database.orm_models import Order, TimelineEvent

logger = get_logger(__name__)


def to_entry(event: TimelineEvent) -> TimelineEntry:
    return TimelineEntry(
        order_id=str(event.order_id),
        sequence=event.sequence,
        event_type=EventType(event.event_type),
        performed_by=event.performed_by,
        event_data=dict(event.event_data or {}),
        created_at=event.created_at,
    )


def check_consistency(order: Order, events: list[TimelineEvent]) -> OrderProjection:
    """Replay events and compare the projection with the stored order.

    Raises:
        LedgerInconsistencyError: replay fails or disagrees with the order.
    """
    order_id = str(order.id)
    projection = replay(order_id, [to_entry(e) for e in events])

    mismatches = []
    if projection.status.value != order.status:
        mismatches.append(f"status {order.status} != replayed {projection.status.value}")
    if projection.revisions != order.revisions:
        mismatches.append(f"revisions {order.revisions} != replayed {projection.revisions}")
    if projection.payment_released != order.payment_released:
        mismatches.append(
            f"payment_released {order.payment_released} != replayed {projection.payment_released}"
        )
    if mismatches:
        raise LedgerInconsistencyError(order_id, "; ".join(mismatches))
    return projection


class LedgerService:
    """Timeline history and consistency checks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def history(self, order_id: uuid.UUID) -> list[TimelineEvent]:
        """All timeline events of an order, in sequence order."""
        async with self._session_factory() as session:
            await self._get_order_or_raise(session, order_id)
            return await TimelineRepository(session).get_by_order(order_id)

    async def verify(self, order_id: uuid.UUID) -> OrderProjection:
        """Replay the order's timeline and compare it with the stored order."""
        async with self._session_factory() as session:
            order = await self._get_order_or_raise(session, order_id)
            events = await TimelineRepository(session).get_by_order(order_id)
        try:
            projection = check_consistency(order, events)
        except LedgerInconsistencyError as exc:
            logger.error("ledger.inconsistent", order_id=str(order_id), detail=exc.detail)
            raise
        logger.debug("ledger.verified", order_id=str(order_id), events=len(events))
        return projection

    @staticmethod
    async def _get_order_or_raise(session: AsyncSession, order_id: uuid.UUID) -> Order:
        order = await OrderRepository(session).get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order
