#!/usr/bin/env python3
"""
Broker Client contract.

The exit scheduler and the confirmation monitor only ever talk to a broker
through this interface:

- place_order(request)        → BrokerOrderAck
- get_order_status(order_id)  → BrokerOrderStatus
- get_positions()             → List[BrokerPosition]
- get_orders()                → List[BrokerOrderStatus] (today's order book)

Every call is bounded-latency and fallible. Failures are classified so
callers can decide between retry, terminal failure and escalation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import threading
from typing import Any, Dict, List, Optional


# ======================================================
# ERRORS
# ======================================================

class BrokerError(Exception):
    """Base class for broker failures."""


class BrokerTransientError(BrokerError):
    """Timeouts, connection drops, rate limiting, broker 5xx. Retry later."""


class BrokerRejectedError(BrokerError):
    """Definitive rejection (invalid instrument, margin, etc). Never retried."""


class BrokerAuthError(BrokerError):
    """Expired / invalid credentials or missing session. Polling cannot fix it."""


class BrokerOrderNotFound(BrokerError):
    """Broker has no record of the order (yet)."""


# ======================================================
# DTOs
# ======================================================

# Broker order statuses that mean the order can still fill
LIVE_ORDER_STATUSES = frozenset({
    "OPEN",
    "OPEN PENDING",
    "TRIGGER PENDING",
    "PUT ORDER REQ RECEIVED",
    "VALIDATION PENDING",
    "MODIFY PENDING",
    "MODIFY VALIDATION PENDING",
    "MODIFIED",
    "AMO REQ RECEIVED",
})


@dataclass
class BrokerOrderRequest:
    symbol: str
    exchange: str
    transaction_type: str           # BUY | SELL
    quantity: int
    order_type: str = "MARKET"      # MARKET | LIMIT | SL | SL-M
    price: Optional[float] = None
    product: str = "MIS"
    tag: Optional[str] = None

    def __post_init__(self):
        self.transaction_type = self.transaction_type.upper()
        if self.transaction_type not in ("BUY", "SELL"):
            raise ValueError(f"transaction_type must be BUY or SELL, got {self.transaction_type}")
        if int(self.quantity) <= 0:
            raise ValueError(f"quantity must be positive, got {self.quantity}")
        if self.order_type != "MARKET" and self.price is None:
            raise ValueError(f"{self.order_type} order requires a price")


@dataclass
class BrokerOrderAck:
    order_id: str


@dataclass
class BrokerOrderStatus:
    order_id: str
    status: str                     # raw broker status, upper-cased
    quantity: int
    filled_quantity: int
    pending_quantity: Optional[int] = None
    average_price: Optional[float] = None
    status_message: Optional[str] = None
    symbol: Optional[str] = None
    exchange: Optional[str] = None
    transaction_type: Optional[str] = None
    product: Optional[str] = None
    tag: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_ORDER_STATUSES


@dataclass
class BrokerPosition:
    symbol: str
    exchange: str
    quantity: int                   # signed net quantity
    average_price: float = 0.0
    pnl: float = 0.0
    product: Optional[str] = None


# ======================================================
# CLIENT INTERFACE
# ======================================================

class BrokerClient(ABC):
    """One authenticated broker session for one user."""

    user_id: str

    @abstractmethod
    def place_order(self, request: BrokerOrderRequest) -> BrokerOrderAck:
        ...

    @abstractmethod
    def get_order_status(self, order_id: str) -> BrokerOrderStatus:
        ...

    @abstractmethod
    def get_positions(self) -> List[BrokerPosition]:
        ...

    @abstractmethod
    def get_orders(self) -> List[BrokerOrderStatus]:
        ...


class BrokerRegistry:
    """user_id → BrokerClient. Unknown users are an auth failure."""

    def __init__(self):
        self._lock = threading.Lock()
        self._clients: Dict[str, BrokerClient] = {}

    def register(self, user_id: str, client: BrokerClient) -> None:
        with self._lock:
            self._clients[user_id] = client

    def get(self, user_id: str) -> BrokerClient:
        with self._lock:
            client = self._clients.get(user_id)
        if client is None:
            raise BrokerAuthError(f"No broker session for user {user_id}")
        return client
