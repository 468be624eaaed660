from __future__ import annotations

import itertools
import json
import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from app.errors import (
    INVALID_FIELD,
    MALFORMED_JSON,
    MISSING_FIELD,
    ErrorCodes,
    MarketDataError,
)
from app.schemas.market import DepthLadder, ErrorEvent, MarketEvent, Ticker, Trade, canonical_symbol
from app.services.depth_ladder import build_depth_ladder

logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://stream.binance.com:9443/stream"
DEFAULT_STREAMS = ("trade", "depth20", "ticker")

_TRADE_FIELDS = ("s", "p", "q", "T", "t")
_TICKER_FIELDS = ("s", "c", "P", "o", "h", "l", "v", "q")
_IGNORED_EVENT_TYPES = {"heartbeat", "ping", "pong"}
# 2**32 * base is far beyond any sane cap; keeps the float math finite
_MAX_BACKOFF_EXPONENT = 32


def _require(data: Dict[str, Any], fields: Iterable[str], *, kind: str) -> None:
    missing = [f for f in fields if data.get(f) is None or data.get(f) == ""]
    if missing:
        raise MarketDataError(
            f"missing required fields in {kind} message: {','.join(missing)}",
            MISSING_FIELD,
        )


def _to_int(value: Any, *, field_name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MarketDataError(f"invalid integer value for {field_name}: {value!r}", INVALID_FIELD) from exc


def _to_bool(value: Any, *, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise MarketDataError(f"invalid boolean value for {field_name}: {value!r}", INVALID_FIELD)
    return value


def _parse_trade(data: Dict[str, Any]) -> Trade:
    _require(data, _TRADE_FIELDS, kind="trade")
    return Trade(
        symbol=canonical_symbol(data["s"]),
        price=str(data["p"]),
        quantity=str(data["q"]),
        timestamp=_to_int(data["T"], field_name="T"),
        trade_id=_to_int(data["t"], field_name="t"),
        is_buyer_maker=_to_bool(data.get("m", False), field_name="m"),
    )


def _parse_ticker(data: Dict[str, Any]) -> Ticker:
    _require(data, _TICKER_FIELDS, kind="ticker")
    price_change = data.get("p")
    return Ticker(
        symbol=canonical_symbol(data["s"]),
        last_price=str(data["c"]),
        price_change=None if price_change is None else str(price_change),
        price_change_percent=str(data["P"]),
        open_price=str(data["o"]),
        high_price=str(data["h"]),
        low_price=str(data["l"]),
        volume=str(data["v"]),
        quote_volume=str(data["q"]),
    )


def _parse_depth(symbol: str, data: Dict[str, Any]) -> DepthLadder:
    bids = data["bids"] if "bids" in data else data.get("b")
    asks = data["asks"] if "asks" in data else data.get("a")
    if not symbol or not isinstance(bids, list) or not isinstance(asks, list):
        raise MarketDataError("missing required fields in depth message", MISSING_FIELD)
    return build_depth_ladder(symbol, bids, asks)


def parse_message(payload: dict | str | bytes) -> Optional[MarketEvent]:
    """Normalize one upstream frame.

    Returns ``None`` for frames that carry no market data (subscription acks,
    heartbeats, channels the relay does not forward). Raises
    ``MarketDataError`` for frames that cannot be normalized.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MarketDataError("payload is not valid utf-8", MALFORMED_JSON) from exc

    if isinstance(payload, str):
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise MarketDataError("payload must be valid JSON", MALFORMED_JSON) from exc
    else:
        raw = payload

    if not isinstance(raw, dict):
        raise MarketDataError("decoded payload must be an object", MALFORMED_JSON)

    if "id" in raw and ("result" in raw or "error" in raw):
        if raw.get("error") is not None:
            logger.warning("[WS][ws_control_rejected] id=%s error=%s", raw.get("id"), raw.get("error"))
        return None

    stream = raw.get("stream")
    if stream is not None:
        data = raw.get("data")
        if not isinstance(stream, str) or "@" not in stream or not isinstance(data, dict):
            raise MarketDataError("invalid combined stream frame", MISSING_FIELD)
        stream_symbol, channel = stream.split("@")[:2]
        if channel == "trade":
            return _parse_trade(data)
        if channel.startswith("depth"):
            return _parse_depth(canonical_symbol(data.get("s") or stream_symbol), data)
        if channel == "ticker":
            return _parse_ticker(data)
        logger.debug("[WS][ws_message_ignore] stream=%s", stream)
        return None

    event_kind = raw.get("e")
    if event_kind is None:
        raise MarketDataError("missing stream or event type", MISSING_FIELD)
    if event_kind == "trade":
        return _parse_trade(raw)
    if event_kind == "24hrTicker":
        return _parse_ticker(raw)
    if event_kind == "depthUpdate":
        return _parse_depth(canonical_symbol(raw.get("s") or ""), raw)
    if event_kind not in _IGNORED_EVENT_TYPES:
        logger.debug("[WS][ws_message_ignore] event=%s", event_kind)
    return None


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class BinanceWsClient:
    """Owns the single upstream connection and the set of held symbols.

    Symbols stay held across reconnects; every successful open re-issues one
    SUBSCRIBE frame per held symbol, in the order they were first requested.
    """

    def __init__(
        self,
        on_event: Optional[Callable[[MarketEvent], None]] = None,
        *,
        url: str = DEFAULT_WS_URL,
        streams: Iterable[str] = DEFAULT_STREAMS,
        backoff_base_sec: float = 1.0,
        backoff_cap_sec: float = 30.0,
        jitter_sec: float = 0.5,
        jitter_fn: Optional[Callable[[], float]] = None,
        send_timeout_sec: float = 5.0,
        websocket_app_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._on_event = on_event
        self.url = url
        self.streams = tuple(streams)
        self.backoff_base_sec = backoff_base_sec
        self.backoff_cap_sec = backoff_cap_sec
        self.jitter_sec = jitter_sec
        self._jitter_fn = jitter_fn or (lambda: random.uniform(0.0, self.jitter_sec))
        self.send_timeout_sec = send_timeout_sec
        self._websocket_app_factory = websocket_app_factory or self._default_websocket_app_factory

        self.running = False
        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self.reconnect_count = 0
        self.last_error: str | None = None
        self.last_heartbeat_ts: int | None = None
        self.messages = 0
        self.dropped_messages = 0

        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._request_ids = itertools.count(1)
        # insertion-ordered set of canonical symbols
        self._held: dict[str, None] = {}
        self._ws: Any = None
        self._app: Any = None
        self._stopped = False

    def _default_websocket_app_factory(self, *args: Any, **kwargs: Any) -> Any:
        from websocket import WebSocketApp

        return WebSocketApp(*args, **kwargs)

    def set_on_event(self, callback: Callable[[MarketEvent], None]) -> None:
        self._on_event = callback

    def held_symbols(self) -> list[str]:
        with self._lock:
            return list(self._held)

    def build_control_message(self, method: str, symbol: str) -> Dict[str, Any]:
        wire_symbol = canonical_symbol(symbol).lower()
        return {
            "method": method,
            "params": [f"{wire_symbol}@{stream}" for stream in self.streams],
            "id": next(self._request_ids),
        }

    def _send_control(self, ws: Any, method: str, symbol: str) -> None:
        message = self.build_control_message(method, symbol)
        try:
            ws.send(json.dumps(message))
        except Exception as exc:
            # the close handler reconnects and resubscribes from the held set
            self.last_error = str(exc)
            logger.warning("[WS][ws_send_failed] method=%s symbol=%s error=%s", method, symbol, exc)
            return
        logger.info("[WS][ws_%s] symbol=%s id=%s", method.lower(), symbol, message["id"])

    def subscribe(self, symbol: str) -> bool:
        symbol = canonical_symbol(symbol)
        with self._lock:
            if symbol in self._held:
                return False
            self._held[symbol] = None
            if self.state is ConnectionState.CONNECTED and self._ws is not None:
                self._send_control(self._ws, "SUBSCRIBE", symbol)
            else:
                logger.info("[WS][ws_subscribe_deferred] symbol=%s state=%s", symbol, self.state.value)
            return True

    def unsubscribe(self, symbol: str) -> bool:
        symbol = canonical_symbol(symbol)
        with self._lock:
            if symbol not in self._held:
                return False
            del self._held[symbol]
            if self.state is ConnectionState.CONNECTED and self._ws is not None:
                self._send_control(self._ws, "UNSUBSCRIBE", symbol)
            return True

    def _emit_event(self, event: MarketEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("[WS][ws_event_handler_error] type=%s", type(event).__name__)

    def handle_raw_message(self, payload: dict | str | bytes) -> Optional[MarketEvent]:
        self.messages += 1
        try:
            event = parse_message(payload)
        except MarketDataError as exc:
            self.dropped_messages += 1
            logger.warning(
                "[WS][ws_message_drop] classification=%s reason=%s",
                exc.classification,
                exc.message,
            )
            self._emit_event(
                ErrorEvent(
                    code=exc.code,
                    message="Invalid market data received",
                    classification=exc.classification,
                )
            )
            return None
        if event is not None:
            self._emit_event(event)
        return event

    def _on_open(self, ws: Any) -> None:
        with self._lock:
            stopped = self._stopped
        if stopped:
            # run_forever re-arms the app, so a close() issued before it started is lost
            logger.info("[WS][ws_connect_result] status=closed_after_stop")
            ws.close()
            return
        self._apply_send_timeout(ws)

        with self._lock:
            self.attempt = 0
            self._ws = ws
            symbols = list(self._held)
            for symbol in symbols:
                self._send_control(ws, "SUBSCRIBE", symbol)
            self.state = ConnectionState.CONNECTED
        logger.info("[WS][ws_connect_result] status=open resubscribed=%s", len(symbols))

    def _apply_send_timeout(self, ws: Any) -> None:
        # websocket-client leaves the socket blocking unless a default timeout is set
        sock = getattr(ws, "sock", None)
        if sock is not None and self.send_timeout_sec:
            sock.settimeout(self.send_timeout_sec)

    def _on_message(self, _: Any, raw_message: Any) -> None:
        self.handle_raw_message(raw_message)

    def _on_ping(self, _: Any, data: Any) -> None:
        # websocket-client answers with the pong itself
        self.last_heartbeat_ts = int(time.time())
        logger.debug("[WS][ws_ping] size=%s", len(data or b""))

    def _on_error(self, _: Any, error: Any) -> None:
        self.last_error = str(error)
        logger.error("[WS][ws_error] %s", self.last_error)
        self._emit_event(
            ErrorEvent(
                code=ErrorCodes.WEBSOCKET_CONNECTION_FAILED,
                message="Market data service error",
            )
        )

    def _on_close(self, _: Any, code: Any, reason: Any) -> None:
        with self._lock:
            self.state = ConnectionState.DISCONNECTED
            self._ws = None
        logger.warning("[WS][ws_close] code=%s reason=%s", code, reason)

    def connect_once(self) -> Any:
        """Open one connection and block until it closes."""
        state = {"opened": False}

        def _on_open(ws: Any) -> None:
            state["opened"] = True
            self._on_open(ws)

        with self._lock:
            self.state = ConnectionState.CONNECTING
        logger.info("[WS][ws_connect] url=%s held=%s", self.url, len(self._held))

        ws_app = self._websocket_app_factory(
            self.url,
            on_open=_on_open,
            on_message=self._on_message,
            on_error=self._on_error,
            on_close=self._on_close,
            on_ping=self._on_ping,
        )
        with self._lock:
            self._app = ws_app
            stopped = self._stopped
        try:
            if stopped:
                return ws_app
            ws_app.run_forever()
        finally:
            with self._lock:
                self.state = ConnectionState.DISCONNECTED
                self._ws = None
                self._app = None

        if not state["opened"]:
            raise RuntimeError("ws_open_not_confirmed")
        return ws_app

    def backoff_delay(self, attempt: int) -> float:
        exponent = min(max(attempt, 0), _MAX_BACKOFF_EXPONENT)
        return min(self.backoff_cap_sec, self.backoff_base_sec * (2**exponent))

    def next_delay(self) -> float:
        delay = self.backoff_delay(self.attempt) + self._jitter_fn()
        self.attempt += 1
        return delay

    def _wait_for_retry(self, delay: float) -> None:
        self._wake.wait(timeout=delay)
        self._wake.clear()

    def run_with_reconnect(
        self,
        *,
        connect_once: Optional[Callable[[], Any]] = None,
        sleep_fn: Optional[Callable[[float], None]] = None,
        max_retries: int | None = None,
    ) -> None:
        """Keep the upstream connected until ``stop()``; retries without limit by default.

        Call ``start()`` first; a ``stop()`` issued before the loop begins wins.
        """
        connect_once = connect_once or self.connect_once
        sleep_fn = sleep_fn or self._wait_for_retry

        failures = 0
        while self.running:
            try:
                connect_once()
            except Exception as exc:
                self.last_error = str(exc)
                logger.warning("[WS][ws_connect_failed] error=%s", exc)

            if not self.running:
                break

            self.reconnect_count += 1
            failures += 1
            if max_retries is not None and failures >= max_retries:
                break

            delay = self.next_delay()
            logger.info("[WS][ws_reconnect_scheduled] attempt=%s delay=%.2f", self.attempt, delay)
            sleep_fn(delay)

        logger.info("[WS][ws_worker_exit] reconnect_count=%s", self.reconnect_count)

    def start(self) -> None:
        self.running = True
        self._stopped = False
        self._wake.clear()

    def connect(self) -> None:
        """Cancel a pending reconnect wait so the next attempt starts now."""
        if self.running and self.state is ConnectionState.DISCONNECTED:
            self._wake.set()

    def stop(self) -> None:
        self.running = False
        self._wake.set()
        with self._lock:
            self._stopped = True
            ws_app = self._app
        if ws_app is not None:
            ws_app.close()

    def metrics(self) -> dict:
        with self._lock:
            held = len(self._held)
        return {
            "upstream_state": self.state.value,
            "upstream_held_symbols": held,
            "upstream_reconnect_count": self.reconnect_count,
            "upstream_attempt": self.attempt,
            "upstream_last_error": self.last_error,
            "upstream_messages": self.messages,
            "upstream_dropped_messages": self.dropped_messages,
            "upstream_last_heartbeat_ts": self.last_heartbeat_ts,
        }
