from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from shockbot.config import ExecutionConfig
from shockbot.data.market_data import SqliteMarketDataStore
from shockbot.errors import VenueError
from shockbot.storage.models import TradeRecord
from shockbot.strategy.contracts import TradingMode

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OrderRequest:
    symbol: str
    option_symbol: str
    lots: int
    reference_price: float
    client_order_id: str


@dataclass(slots=True)
class Fill:
    success: bool
    order_id: str | None = None
    fill_price: float | None = None
    message: str = ""


@dataclass(slots=True)
class PositionMark:
    trade_id: str
    current_price: float
    unrealized_pnl: float
    stop_hit: bool


class ExecutionVenue(Protocol):
    mode: TradingMode

    def place_order(self, request: OrderRequest) -> Fill:
        ...

    def exit_position(self, trade: TradeRecord) -> Fill:
        ...

    def current_price(self, option_symbol: str) -> float | None:
        ...

    def monitor_positions(self, trades: list[TradeRecord]) -> list[PositionMark]:
        ...

    def is_healthy(self) -> bool:
        ...


def _mark(trade: TradeRecord, price: float) -> PositionMark:
    return PositionMark(
        trade_id=trade.trade_id,
        current_price=price,
        unrealized_pnl=(price - trade.entry_price) * trade.lots,
        stop_hit=price <= trade.stop_loss,
    )


class PaperVenue:
    """Simulated fills against stored option quotes with fixed slippage."""

    mode = TradingMode.PAPER

    def __init__(self, market_data: SqliteMarketDataStore, slippage: float = 0.001):
        self.market_data = market_data
        self.slippage = slippage

    def current_price(self, option_symbol: str) -> float | None:
        quote = self.market_data.quote_by_option_symbol(option_symbol)
        return quote.price if quote is not None else None

    def place_order(self, request: OrderRequest) -> Fill:
        price = self.current_price(request.option_symbol) or request.reference_price
        if price <= 0 or request.lots < 1:
            return Fill(False, message="Invalid paper order")
        fill_price = price * (1.0 + self.slippage)
        order_id = f"PAPER-{uuid.uuid4().hex[:12]}"
        LOGGER.info(
            "PAPER: bought %s x%s at %.2f (%s)",
            request.option_symbol,
            request.lots,
            fill_price,
            request.client_order_id,
        )
        return Fill(True, order_id=order_id, fill_price=fill_price, message="Paper fill")

    def exit_position(self, trade: TradeRecord) -> Fill:
        price = self.current_price(trade.option_symbol)
        if price is None:
            return Fill(False, message=f"No quote for {trade.option_symbol}")
        fill_price = price * (1.0 - self.slippage)
        LOGGER.info("PAPER: sold %s x%s at %.2f", trade.option_symbol, trade.lots, fill_price)
        return Fill(True, order_id=f"PAPER-{uuid.uuid4().hex[:12]}", fill_price=fill_price, message="Paper exit")

    def monitor_positions(self, trades: list[TradeRecord]) -> list[PositionMark]:
        marks: list[PositionMark] = []
        for trade in trades:
            price = self.current_price(trade.option_symbol)
            if price is not None:
                marks.append(_mark(trade, price))
        return marks

    def is_healthy(self) -> bool:
        return self.market_data.is_healthy()


class BrokerVenue:
    """REST broker bridge for real-capital orders."""

    mode = TradingMode.REAL

    def __init__(self, base_url: str, api_key: str, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            }
        )
        self._healthy = True

    def _call(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            self._healthy = False
            raise VenueError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 500:
            self._healthy = False
        if response.status_code >= 400:
            raise VenueError(f"{method} {path} returned {response.status_code}: {response.text[:200]}")
        self._healthy = True
        try:
            return response.json() or {}
        except ValueError as exc:
            raise VenueError(f"{method} {path} returned invalid JSON") from exc

    def current_price(self, option_symbol: str) -> float | None:
        try:
            data = self._call("GET", f"/quotes/{option_symbol}")
        except VenueError as exc:
            LOGGER.warning("Quote for %s unavailable: %s", option_symbol, exc)
            return None
        price = data.get("ltp", data.get("price"))
        return float(price) if price is not None else None

    def _order(self, side: str, option_symbol: str, lots: int, client_order_id: str) -> Fill:
        try:
            data = self._call(
                "POST",
                "/orders",
                {
                    "symbol": option_symbol,
                    "side": side,
                    "quantity": lots,
                    "order_type": "MARKET",
                    "client_order_id": client_order_id,
                },
            )
        except VenueError as exc:
            LOGGER.error("Broker %s order for %s failed: %s", side, option_symbol, exc)
            return Fill(False, message=str(exc))
        status = str(data.get("status", "")).upper()
        fill_price = data.get("average_price", data.get("fill_price"))
        if status not in {"FILLED", "COMPLETE"} or fill_price is None:
            return Fill(False, order_id=data.get("order_id"), message=f"Order not filled: {status or 'UNKNOWN'}")
        return Fill(True, order_id=str(data.get("order_id")), fill_price=float(fill_price), message=status)

    def place_order(self, request: OrderRequest) -> Fill:
        return self._order("BUY", request.option_symbol, request.lots, request.client_order_id)

    def exit_position(self, trade: TradeRecord) -> Fill:
        return self._order("SELL", trade.option_symbol, trade.lots, f"EXIT-{trade.trade_id}")

    def monitor_positions(self, trades: list[TradeRecord]) -> list[PositionMark]:
        marks: list[PositionMark] = []
        for trade in trades:
            price = self.current_price(trade.option_symbol)
            if price is not None:
                marks.append(_mark(trade, price))
        return marks

    def is_healthy(self) -> bool:
        try:
            self._call("GET", "/health")
        except VenueError as exc:
            LOGGER.warning("Broker health check failed: %s", exc)
            return False
        return self._healthy


def build_venue(
    mode: TradingMode,
    config: ExecutionConfig,
    market_data: SqliteMarketDataStore,
) -> ExecutionVenue:
    if mode == TradingMode.PAPER:
        return PaperVenue(market_data, slippage=config.paper_slippage)
    api_key = os.getenv(config.broker.api_key_env, "").strip()
    if not api_key:
        raise VenueError(f"Broker API key is not configured ({config.broker.api_key_env})")
    return BrokerVenue(config.broker.base_url, api_key, timeout_seconds=config.broker.timeout_seconds)
