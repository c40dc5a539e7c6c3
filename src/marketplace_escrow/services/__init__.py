"""Application services — use case orchestration."""

from marketplace_escrow.services.ledger_service import LedgerService
from marketplace_escrow.services.offer_service import OfferService
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.settlement_service import SettlementCoordinator

__all__ = ["LedgerService", "OfferService", "OrderService", "SettlementCoordinator"]
