from __future__ import annotations

import math
from typing import Any, Iterable

from app.errors import INVALID_FIELD, MarketDataError
from app.schemas.market import DepthLadder, DepthLevel


def _to_float(value: Any, *, field_name: str) -> float:
    try:
        if value is None or value == "" or isinstance(value, bool):
            raise ValueError(f"missing value for {field_name}")
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise MarketDataError(f"invalid numeric value for {field_name}: {value!r}", INVALID_FIELD) from exc
    if not math.isfinite(parsed):
        raise MarketDataError(f"non-finite value for {field_name}: {value!r}", INVALID_FIELD)
    return parsed


def parse_levels(raw_levels: Iterable[Any]) -> list[tuple[float, float]]:
    """Parse ``[price, size]`` rows; one bad row rejects the whole side."""
    out: list[tuple[float, float]] = []
    for row in raw_levels:
        if not isinstance(row, (list, tuple)) or len(row) < 2:
            raise MarketDataError(f"invalid depth level: {row!r}", INVALID_FIELD)
        out.append((_to_float(row[0], field_name="price"), _to_float(row[1], field_name="size")))
    return out


def build_side(raw_levels: Iterable[Any], *, descending: bool) -> tuple[DepthLevel, ...]:
    levels = sorted(parse_levels(raw_levels), key=lambda level: level[0], reverse=descending)

    ladder: list[DepthLevel] = []
    total = 0.0
    for price, size in levels:
        # plain running sum, float drift is accepted
        total = total + size if ladder else size
        ladder.append(DepthLevel(price=price, size=size, total=total))
    return tuple(ladder)


def build_depth_ladder(symbol: str, bids: Iterable[Any], asks: Iterable[Any]) -> DepthLadder:
    return DepthLadder(
        symbol=symbol,
        bids=build_side(bids, descending=True),
        asks=build_side(asks, descending=False),
    )
