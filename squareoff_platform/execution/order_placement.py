#!/usr/bin/env python3
"""
OrderPlacementService
=====================

The single placement path shared by exit orders and any other order the
platform decides to send.

Invariants:
- Broker position book is the ONLY source of truth for exit side + qty
- NO qty / side inference from the scheduled exit record
- Every placement outcome is persisted as an OrderState before returning
- A placed order is handed to the confirmation monitor immediately
- Placement errors are re-raised so the caller can classify them
- After a placement with an unknown outcome, the broker order book is
  searched for the exit order before a new one is sent
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import uuid4

from squareoff_platform.brokers.base import (
    BrokerOrderRequest,
    BrokerOrderStatus,
    BrokerPosition,
    BrokerRegistry,
    BrokerRejectedError,
)
from squareoff_platform.logging.logger_config import get_component_logger
from squareoff_platform.persistence.models import (
    ConfirmationStatus,
    ExecutionStatus,
    OrderState,
    PlacementStatus,
    ScheduledExit,
)
from squareoff_platform.persistence.order_state_repository import OrderStateRepository
from squareoff_platform.utils.clock import VenueClock, to_utc_iso

logger = get_component_logger("order_placement")

INTRADAY_PRODUCT = "MIS"
EXIT_ORDER_TAG = "AUTO_SQUAREOFF"


@dataclass
class PlacementResult:
    order_id: str
    order_state: OrderState


@dataclass
class ExitOrderResult:
    externally_closed: bool
    symbol: str
    order_id: Optional[str] = None
    exchange: Optional[str] = None
    transaction_type: Optional[str] = None
    quantity: int = 0
    message: Optional[str] = None

    def to_details(self) -> Dict[str, Any]:
        return {
            "externally_closed": self.externally_closed,
            "symbol": self.symbol,
            "order_id": self.order_id,
            "exchange": self.exchange,
            "transaction_type": self.transaction_type,
            "quantity": self.quantity,
            "message": self.message,
        }


class OrderPlacementService:
    """
    Responsibilities:
    - Read broker position book for exits
    - Submit orders through the user's broker session
    - Persist the OrderState (PLACED / PLACEMENT_FAILED / PLACEMENT_ERROR)
    - Start confirmation tracking for placed orders
    """

    def __init__(
        self,
        order_repo: OrderStateRepository,
        brokers: BrokerRegistry,
        monitor,
        clock: VenueClock,
    ):
        self.repo = order_repo
        self.brokers = brokers
        self.monitor = monitor
        self.clock = clock

    # --------------------------------------------------
    # Position lookup
    # --------------------------------------------------

    def get_open_position(self, user_id: str, symbol: str) -> Optional[BrokerPosition]:
        """Net open position for ``symbol`` in the user's broker book, or None when flat."""
        positions: List[BrokerPosition] = self.brokers.get(user_id).get_positions()
        open_positions = [p for p in positions if p.symbol == symbol and p.quantity != 0]
        if not open_positions:
            return None

        for p in open_positions:
            if p.product == INTRADAY_PRODUCT:
                return p
        return open_positions[0]

    # --------------------------------------------------
    # Exit orders
    # --------------------------------------------------

    def place_exit_order(self, scheduled_exit: ScheduledExit) -> ExitOrderResult:
        """
        Square off the position behind ``scheduled_exit``.

        Returns externally_closed=True without placing anything when the
        broker already shows the symbol flat.
        """
        adopted = self._adopt_unacknowledged_exit(scheduled_exit)
        if adopted is not None:
            return adopted

        position = self.get_open_position(scheduled_exit.user_id, scheduled_exit.symbol)

        if position is None:
            logger.warning(
                "EXIT SKIPPED | position externally closed | position=%s | user=%s | symbol=%s",
                scheduled_exit.position_id,
                scheduled_exit.user_id,
                scheduled_exit.symbol,
            )
            return ExitOrderResult(
                externally_closed=True,
                symbol=scheduled_exit.symbol,
                message="Position externally closed",
            )

        side = "SELL" if position.quantity > 0 else "BUY"
        qty = abs(position.quantity)

        request = BrokerOrderRequest(
            symbol=position.symbol,
            exchange=position.exchange,
            transaction_type=side,
            quantity=qty,
            order_type="MARKET",
            product=position.product or INTRADAY_PRODUCT,
            tag=EXIT_ORDER_TAG,
        )

        logger.critical(
            "EXIT ORDER | position=%s | user=%s | %s %s x%s",
            scheduled_exit.position_id,
            scheduled_exit.user_id,
            side,
            position.symbol,
            qty,
        )

        result = self.place_order(
            request,
            user_id=scheduled_exit.user_id,
            trade_execution_id=scheduled_exit.position_id,
        )
        return ExitOrderResult(
            externally_closed=False,
            symbol=position.symbol,
            order_id=result.order_id,
            exchange=position.exchange,
            transaction_type=side,
            quantity=qty,
            message="Exit order placed",
        )

    def _adopt_unacknowledged_exit(self, scheduled_exit: ScheduledExit) -> Optional[ExitOrderResult]:
        """
        Track an exit order that reached the broker although an earlier
        attempt never got its acknowledgement.

        Only runs when this position already has a PLACEMENT_ERROR order.
        """
        earlier = self.repo.list_by_trade(scheduled_exit.position_id)
        if not any(s.placement_status == PlacementStatus.PLACEMENT_ERROR for s in earlier):
            return None

        for order in self.brokers.get(scheduled_exit.user_id).get_orders():
            if order.tag != EXIT_ORDER_TAG or order.symbol != scheduled_exit.symbol:
                continue
            if order.status in ("CANCELLED", "REJECTED") and order.filled_quantity == 0:
                continue
            if self.repo.get(order.order_id, with_history=False) is not None:
                continue
            return self._adopt(scheduled_exit, order)

        logger.info(
            "NO UNACKNOWLEDGED EXIT ORDER | position=%s | symbol=%s",
            scheduled_exit.position_id, scheduled_exit.symbol,
        )
        return None

    def _adopt(self, scheduled_exit: ScheduledExit, order: BrokerOrderStatus) -> ExitOrderResult:
        now = to_utc_iso(self.clock.now())
        self.repo.create(
            OrderState(
                order_id=order.order_id,
                user_id=scheduled_exit.user_id,
                trade_execution_id=scheduled_exit.position_id,
                symbol=order.symbol,
                exchange=order.exchange,
                order_type="MARKET",
                transaction_type=order.transaction_type,
                quantity=int(order.quantity),
                price=None,
                product=order.product or INTRADAY_PRODUCT,
                placement_status=PlacementStatus.PLACED,
                confirmation_status=ConfirmationStatus.PENDING,
                execution_status=ExecutionStatus.UNKNOWN,
                pending_quantity=int(order.quantity),
                status_message="Adopted from broker order book",
                created_at=now,
                updated_at=now,
            )
        )
        logger.warning(
            "EXIT ORDER ADOPTED | position=%s | order_id=%s | broker_status=%s | %s %s x%s",
            scheduled_exit.position_id, order.order_id, order.status,
            order.transaction_type, order.symbol, order.quantity,
        )

        self.monitor.track(order.order_id)
        return ExitOrderResult(
            externally_closed=False,
            symbol=order.symbol,
            order_id=order.order_id,
            exchange=order.exchange,
            transaction_type=order.transaction_type,
            quantity=int(order.quantity),
            message="Exit order from an earlier attempt adopted",
        )

    # --------------------------------------------------
    # Generic placement
    # --------------------------------------------------

    def place_order(
        self,
        request: BrokerOrderRequest,
        *,
        user_id: str,
        trade_execution_id: Optional[str] = None,
    ) -> PlacementResult:
        now = to_utc_iso(self.clock.now())

        try:
            ack = self.brokers.get(user_id).place_order(request)
        except BrokerRejectedError as e:
            local_id = self._local_order_id()
            self._persist(
                request, user_id, trade_execution_id, local_id, now,
                placement_status=PlacementStatus.PLACEMENT_FAILED,
                execution_status=ExecutionStatus.REJECTED,
                error=str(e),
                reason=f"Broker rejected order: {e}",
            )
            logger.error(
                "❌ PLACEMENT REJECTED | user=%s | %s %s x%s | local_id=%s | error=%s",
                user_id, request.transaction_type, request.symbol, request.quantity, local_id, e,
            )
            raise
        except Exception as e:
            local_id = self._local_order_id()
            self._persist(
                request, user_id, trade_execution_id, local_id, now,
                placement_status=PlacementStatus.PLACEMENT_ERROR,
                execution_status=ExecutionStatus.UNKNOWN,
                error=str(e),
                reason=f"Placement outcome unknown: {e}",
            )
            logger.error(
                "❌ PLACEMENT ERROR | user=%s | %s %s x%s | local_id=%s | error=%s",
                user_id, request.transaction_type, request.symbol, request.quantity, local_id, e,
            )
            raise

        state = self.repo.create(
            OrderState(
                order_id=ack.order_id,
                user_id=user_id,
                trade_execution_id=trade_execution_id,
                symbol=request.symbol,
                exchange=request.exchange,
                order_type=request.order_type,
                transaction_type=request.transaction_type,
                quantity=int(request.quantity),
                price=request.price,
                product=request.product,
                placement_status=PlacementStatus.PLACED,
                confirmation_status=ConfirmationStatus.PENDING,
                execution_status=ExecutionStatus.UNKNOWN,
                pending_quantity=int(request.quantity),
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "✅ ORDER PLACED | order_id=%s | user=%s | %s %s x%s",
            ack.order_id, user_id, request.transaction_type, request.symbol, request.quantity,
        )

        self.monitor.track(ack.order_id)
        return PlacementResult(order_id=ack.order_id, order_state=state)

    def _persist(
        self,
        request: BrokerOrderRequest,
        user_id: str,
        trade_execution_id: Optional[str],
        order_id: str,
        now: str,
        *,
        placement_status: PlacementStatus,
        execution_status: ExecutionStatus,
        error: str,
        reason: str,
    ) -> None:
        self.repo.create(
            OrderState(
                order_id=order_id,
                user_id=user_id,
                trade_execution_id=trade_execution_id,
                symbol=request.symbol,
                exchange=request.exchange,
                order_type=request.order_type,
                transaction_type=request.transaction_type,
                quantity=int(request.quantity),
                price=request.price,
                product=request.product,
                placement_status=placement_status,
                confirmation_status=ConfirmationStatus.FAILED,
                execution_status=execution_status,
                error=error,
                status_message=reason,
                needs_manual_review=True,
                manual_review_reason=reason,
                created_at=now,
                updated_at=now,
            )
        )

    @staticmethod
    def _local_order_id() -> str:
        return f"LOCAL-{uuid4().hex[:16]}"
