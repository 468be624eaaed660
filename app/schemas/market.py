from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer


def canonical_symbol(value: str) -> str:
    return str(value).strip().upper()


class _MarketModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Trade(_MarketModel):
    symbol: str
    price: str
    quantity: str
    timestamp: int
    trade_id: int = Field(alias="tradeId")
    is_buyer_maker: bool = Field(default=False, alias="isBuyerMaker")


class DepthLevel(_MarketModel):
    price: float
    size: float
    total: float

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.price, self.size, self.total)


class DepthLadder(_MarketModel):
    symbol: str
    bids: tuple[DepthLevel, ...]
    asks: tuple[DepthLevel, ...]

    @field_serializer("bids", "asks")
    def _levels_as_rows(self, levels: tuple[DepthLevel, ...]) -> list[list[float]]:
        return [list(level.as_tuple()) for level in levels]


class Ticker(_MarketModel):
    symbol: str
    last_price: str = Field(alias="lastPrice")
    price_change: str | None = Field(default=None, alias="priceChange")
    price_change_percent: str = Field(alias="priceChangePercent")
    open_price: str = Field(alias="openPrice")
    high_price: str = Field(alias="highPrice")
    low_price: str = Field(alias="lowPrice")
    volume: str
    quote_volume: str = Field(alias="quoteVolume")


class ErrorEvent(_MarketModel):
    code: str
    message: str
    classification: str | None = None
    symbol: str | None = None


MarketEvent = Trade | DepthLadder | Ticker | ErrorEvent

EventType = Literal["trade", "depth", "ticker", "error"]

_EVENT_TYPES: dict[type, str] = {
    Trade: "trade",
    DepthLadder: "depth",
    Ticker: "ticker",
    ErrorEvent: "error",
}


def event_type(event: MarketEvent) -> EventType:
    return _EVENT_TYPES[type(event)]


class RelayEnvelope(BaseModel):
    type: EventType
    data: dict


def encode_event(event: MarketEvent) -> str:
    """Serialize an event into the downstream ``{type, data}`` JSON frame."""
    envelope = RelayEnvelope(
        type=event_type(event),
        data=event.model_dump(by_alias=True, exclude_none=True),
    )
    return envelope.model_dump_json()
