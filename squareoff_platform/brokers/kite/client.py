#!/usr/bin/env python3
"""
===============================================================================
KITE CLIENT - REST GATEWAY LAYER
===============================================================================

Thin, thread-safe wrapper over the Kite Connect v3 REST API implementing
the BrokerClient contract.

    ✅ Bounded latency: every request carries a timeout
    ✅ API rate limiting (sliding one-second window)
    ✅ Error classification: transient / rejected / auth / not-found
    ✅ No silent retries of order placement (a retried POST can double-trade)

Endpoints used:
    POST /orders/regular           place order
    GET  /orders                   today's order book
    GET  /orders/{order_id}        order history (last entry = current state)
    GET  /portfolio/positions      net positions
"""

import time
import logging
from collections import deque
from threading import RLock
from typing import Any, Dict, List, Optional

import requests

from squareoff_platform.brokers.base import (
    BrokerAuthError,
    BrokerClient,
    BrokerError,
    BrokerOrderAck,
    BrokerOrderNotFound,
    BrokerOrderRequest,
    BrokerOrderStatus,
    BrokerPosition,
    BrokerRejectedError,
    BrokerTransientError,
)

logger = logging.getLogger(__name__)

_AUTH_EXCEPTIONS = {"TokenException", "PermissionException", "UserException"}
_REJECT_EXCEPTIONS = {"InputException", "OrderException", "MarginException"}
_TRANSIENT_EXCEPTIONS = {"NetworkException", "GeneralException", "DataException"}


class KiteClient(BrokerClient):
    """
    One Kite session (api_key + access_token) for one user.

    The access token is obtained out of band (Kite login flow) and passed
    in through config.
    """

    RATE_LIMIT_WINDOW_SECONDS = 1.0

    def __init__(
        self,
        user_id: str,
        api_key: str,
        access_token: str,
        base_url: str = "https://api.kite.trade",
        timeout_sec: float = 10.0,
        max_calls_per_sec: int = 10,
        session: Optional[requests.Session] = None,
    ):
        self.user_id = user_id
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.max_calls_per_sec = max_calls_per_sec

        self.session = session or requests.Session()
        self.session.headers.update({
            "X-Kite-Version": "3",
            "Authorization": f"token {api_key}:{access_token}",
        })

        self._api_call_times: deque = deque(maxlen=100)
        self._rate_limit_lock = RLock()

        logger.info("KiteClient initialized | user=%s | base_url=%s", user_id, self.base_url)

    # ------------------------------------------------------------------
    # RATE LIMITING
    # ------------------------------------------------------------------

    def _check_api_rate_limit(self) -> None:
        now = time.time()

        with self._rate_limit_lock:
            while (self._api_call_times and
                   now - self._api_call_times[0] > self.RATE_LIMIT_WINDOW_SECONDS):
                self._api_call_times.popleft()

            if len(self._api_call_times) >= self.max_calls_per_sec:
                oldest = self._api_call_times[0]
                sleep_time = self.RATE_LIMIT_WINDOW_SECONDS - (now - oldest)
                if sleep_time > 0:
                    logger.debug("Rate limiting: sleeping %.3fs", sleep_time)
                    time.sleep(sleep_time)
                    now = time.time()

            self._api_call_times.append(now)

    # ------------------------------------------------------------------
    # TRANSPORT
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Any:
        self._check_api_rate_limit()
        url = f"{self.base_url}{path}"

        try:
            response = self.session.request(method, url, data=data, timeout=self.timeout_sec)
        except requests.exceptions.Timeout as e:
            raise BrokerTransientError(f"Kite timeout: {method} {path}") from e
        except requests.exceptions.ConnectionError as e:
            raise BrokerTransientError(f"Kite connection error: {method} {path}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise BrokerTransientError(f"Kite request error: {method} {path}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code == 200 and payload.get("status") == "success":
            return payload.get("data")

        self._raise_for_error(response.status_code, payload, method, path)

    def _raise_for_error(self, status_code: int, payload: Dict[str, Any], method: str, path: str):
        error_type = payload.get("error_type") or ""
        message = payload.get("message") or f"HTTP {status_code}"
        detail = f"Kite {method} {path} failed: {error_type or status_code} | {message}"

        logger.warning("KITE ERROR | status=%s | type=%s | msg=%s", status_code, error_type, message)

        if status_code == 403 or error_type in _AUTH_EXCEPTIONS:
            raise BrokerAuthError(detail)
        if status_code == 429 or status_code >= 500 or error_type in _TRANSIENT_EXCEPTIONS:
            raise BrokerTransientError(detail)
        if status_code == 404:
            raise BrokerOrderNotFound(detail)
        if error_type in _REJECT_EXCEPTIONS or status_code == 400:
            raise BrokerRejectedError(detail)
        raise BrokerError(detail)

    # ------------------------------------------------------------------
    # BROKER CLIENT CONTRACT
    # ------------------------------------------------------------------

    def place_order(self, request: BrokerOrderRequest) -> BrokerOrderAck:
        params = {
            "tradingsymbol": request.symbol,
            "exchange": request.exchange,
            "transaction_type": request.transaction_type,
            "quantity": int(request.quantity),
            "order_type": request.order_type,
            "product": request.product,
            "validity": "DAY",
        }
        if request.price is not None:
            params["price"] = request.price
        if request.tag:
            params["tag"] = request.tag[:20]

        data = self._request("POST", "/orders/regular", data=params)
        order_id = (data or {}).get("order_id")
        if not order_id:
            raise BrokerError(f"Kite accepted order without order_id: {data}")

        logger.info(
            "ORDER PLACED | user=%s | %s %s %s x%s | order_id=%s",
            self.user_id, request.exchange, request.symbol,
            request.transaction_type, request.quantity, order_id,
        )
        return BrokerOrderAck(order_id=str(order_id))

    def get_order_status(self, order_id: str) -> BrokerOrderStatus:
        try:
            history = self._request("GET", f"/orders/{order_id}")
        except BrokerRejectedError as e:
            # Kite answers an unknown order id with an OrderException
            raise BrokerOrderNotFound(str(e)) from e
        if not history:
            raise BrokerOrderNotFound(f"Kite returned no history for order {order_id}")

        return self._to_order_status(history[-1], order_id)

    def get_orders(self) -> List[BrokerOrderStatus]:
        """Today's order book, latest state per order."""
        data = self._request("GET", "/orders") or []
        return [self._to_order_status(o) for o in data]

    def get_positions(self) -> List[BrokerPosition]:
        data = self._request("GET", "/portfolio/positions") or {}
        positions = []
        for p in data.get("net", []):
            positions.append(
                BrokerPosition(
                    symbol=p.get("tradingsymbol"),
                    exchange=p.get("exchange"),
                    quantity=int(p.get("quantity") or 0),
                    average_price=float(p.get("average_price") or 0.0),
                    pnl=float(p.get("pnl") or 0.0),
                    product=p.get("product"),
                )
            )
        return positions

    @staticmethod
    def _to_order_status(order: Dict[str, Any], order_id: Optional[str] = None) -> BrokerOrderStatus:
        return BrokerOrderStatus(
            order_id=str(order.get("order_id", order_id)),
            status=str(order.get("status") or "").upper(),
            quantity=int(order.get("quantity") or 0),
            filled_quantity=int(order.get("filled_quantity") or 0),
            pending_quantity=order.get("pending_quantity"),
            average_price=order.get("average_price"),
            status_message=order.get("status_message"),
            symbol=order.get("tradingsymbol"),
            exchange=order.get("exchange"),
            transaction_type=order.get("transaction_type"),
            product=order.get("product"),
            tag=order.get("tag"),
            raw=order,
        )
