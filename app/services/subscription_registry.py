from __future__ import annotations

import logging
import threading
from typing import Protocol

from app.errors import UnknownClientError
from app.schemas.market import ErrorEvent, MarketEvent, canonical_symbol, encode_event

logger = logging.getLogger(__name__)


class ClientSink(Protocol):
    def send(self, payload: str) -> None: ...


class UpstreamSubscriber(Protocol):
    def subscribe(self, symbol: str) -> bool: ...

    def unsubscribe(self, symbol: str) -> bool: ...


class SubscriptionRegistry:
    """Reference-counts symbol interest and fans upstream events out to clients.

    All state lives behind one lock. Upstream subscribe/unsubscribe calls are
    made while holding it, so the order of refcount transitions and the order
    of upstream control frames always agree.
    """

    def __init__(self, upstream: UpstreamSubscriber) -> None:
        self.upstream = upstream
        self._lock = threading.Lock()
        self._symbol_clients: dict[str, set[str]] = {}
        self._client_symbols: dict[str, set[str]] = {}
        self._sinks: dict[str, ClientSink] = {}
        self.dispatched = 0
        self.delivered = 0
        self.delivery_failures = 0

    def register_client(self, client_id: str, sink: ClientSink) -> None:
        with self._lock:
            self._sinks[client_id] = sink
            self._client_symbols.setdefault(client_id, set())
        logger.info("[RELAY][client_register] client=%s", client_id)

    def add_interest(self, client_id: str, symbol: str) -> None:
        symbol = canonical_symbol(symbol)
        with self._lock:
            held = self._client_symbols.get(client_id)
            if held is None:
                raise UnknownClientError(client_id)
            clients = self._symbol_clients.get(symbol)
            if clients is None:
                clients = self._symbol_clients[symbol] = set()
                self.upstream.subscribe(symbol)
            clients.add(client_id)
            held.add(symbol)
            count = len(clients)
        logger.info("[RELAY][interest_add] client=%s symbol=%s refcount=%s", client_id, symbol, count)

    def _remove_interest_locked(self, client_id: str, symbol: str) -> None:
        clients = self._symbol_clients.get(symbol)
        if clients is not None:
            clients.discard(client_id)
            if not clients:
                del self._symbol_clients[symbol]
                self.upstream.unsubscribe(symbol)
        held = self._client_symbols.get(client_id)
        if held is not None:
            held.discard(symbol)

    def remove_interest(self, client_id: str, symbol: str) -> None:
        symbol = canonical_symbol(symbol)
        with self._lock:
            self._remove_interest_locked(client_id, symbol)
            count = len(self._symbol_clients.get(symbol, ()))
        logger.info("[RELAY][interest_remove] client=%s symbol=%s refcount=%s", client_id, symbol, count)

    def remove_client(self, client_id: str) -> None:
        with self._lock:
            held = self._client_symbols.get(client_id)
            if held is None:
                return
            for symbol in list(held):
                self._remove_interest_locked(client_id, symbol)
            del self._client_symbols[client_id]
            self._sinks.pop(client_id, None)
        logger.info("[RELAY][client_remove] client=%s", client_id)

    def _recipients(self, event: MarketEvent) -> list[tuple[str, ClientSink]]:
        with self._lock:
            if isinstance(event, ErrorEvent) and event.symbol is None:
                client_ids = list(self._sinks)
            else:
                client_ids = list(self._symbol_clients.get(canonical_symbol(event.symbol), ()))
            return [(cid, self._sinks[cid]) for cid in client_ids if cid in self._sinks]

    def dispatch(self, event: MarketEvent) -> int:
        """Deliver ``event`` to every interested client; returns the delivered count."""
        recipients = self._recipients(event)
        self.dispatched += 1
        if not recipients:
            return 0

        payload = encode_event(event)
        delivered = 0
        for client_id, sink in recipients:
            try:
                sink.send(payload)
            except Exception as exc:
                self.delivery_failures += 1
                logger.warning("[RELAY][dispatch_drop] client=%s error=%s", client_id, exc)
                self.remove_client(client_id)
                continue
            delivered += 1
        self.delivered += delivered
        return delivered

    def refcount(self, symbol: str) -> int:
        with self._lock:
            return len(self._symbol_clients.get(canonical_symbol(symbol), ()))

    def symbols(self) -> set[str]:
        with self._lock:
            return set(self._symbol_clients)

    def client_symbols(self, client_id: str) -> set[str]:
        with self._lock:
            return set(self._client_symbols.get(client_id, ()))

    def client_count(self) -> int:
        with self._lock:
            return len(self._client_symbols)

    def metrics(self) -> dict:
        with self._lock:
            clients = len(self._client_symbols)
            symbols = len(self._symbol_clients)
        return {
            "clients": clients,
            "active_symbols": symbols,
            "events_dispatched": self.dispatched,
            "events_delivered": self.delivered,
            "delivery_failures": self.delivery_failures,
        }
