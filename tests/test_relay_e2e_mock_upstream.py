import json
import queue
import threading
import time
import unittest

from fastapi.testclient import TestClient

from app.integrations.binance_ws import ConnectionState
from app.main import app


class _MockBinanceWebSocketApp:
    """Stays open until closed, relaying frames pushed through ``inject``."""

    instances = []

    def __init__(self, url, *, on_open=None, on_message=None, on_error=None, on_close=None, on_ping=None):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.on_ping = on_ping
        self.sent_messages = []
        self._inbox = queue.Queue()
        self._closed = threading.Event()
        _MockBinanceWebSocketApp.instances.append(self)

    def send(self, payload):
        self.sent_messages.append(json.loads(payload))

    def inject(self, frame):
        self._inbox.put(json.dumps(frame))

    def close(self):
        self._closed.set()

    def run_forever(self):
        self.on_open(self)
        while not self._closed.is_set():
            try:
                raw = self._inbox.get(timeout=0.01)
            except queue.Empty:
                continue
            self.on_message(self, raw)
        self.on_close(self, 1000, "closed")


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class RelayE2EMockUpstreamTest(unittest.TestCase):
    def setUp(self):
        _MockBinanceWebSocketApp.instances = []
        self.connector = app.state.connector
        self.original_factory = self.connector._websocket_app_factory
        self.connector._websocket_app_factory = _MockBinanceWebSocketApp

    def tearDown(self):
        self.connector._websocket_app_factory = self.original_factory

    def test_trade_flows_from_upstream_to_subscribed_client(self):
        with TestClient(app) as client:
            self.assertTrue(_wait_until(lambda: self.connector.state is ConnectionState.CONNECTED))
            upstream = _MockBinanceWebSocketApp.instances[0]

            with client.websocket_connect("/ws") as ws:
                ws.send_json({"type": "subscribe", "symbol": "btcusdt"})
                self.assertTrue(_wait_until(lambda: len(upstream.sent_messages) == 1))
                self.assertEqual(upstream.sent_messages[0]["method"], "SUBSCRIBE")
                self.assertIn("btcusdt@trade", upstream.sent_messages[0]["params"])

                upstream.inject(
                    {
                        "stream": "btcusdt@trade",
                        "data": {
                            "e": "trade",
                            "s": "BTCUSDT",
                            "t": 5001,
                            "p": "43000.01",
                            "q": "0.25",
                            "T": 1700000001000,
                            "m": False,
                        },
                    }
                )
                trade = ws.receive_json()

                upstream.inject({"stream": "btcusdt@depth20", "data": {"bids": [[99, 1], [98, 2]], "asks": [[100, 1], [101, 2]]}})
                depth = ws.receive_json()

                upstream.inject({"stream": "btcusdt@trade", "data": {"e": "trade", "s": "BTCUSDT"}})
                error = ws.receive_json()

            self.assertTrue(_wait_until(lambda: len(upstream.sent_messages) == 2))
            self.assertEqual(upstream.sent_messages[1]["method"], "UNSUBSCRIBE")

            metrics = client.get("/v1/metrics/relay").json()

        self.assertEqual(trade["type"], "trade")
        self.assertEqual(trade["data"]["tradeId"], 5001)
        self.assertEqual(trade["data"]["price"], "43000.01")
        self.assertEqual(depth["type"], "depth")
        self.assertEqual(depth["data"]["bids"], [[99.0, 1.0, 1.0], [98.0, 2.0, 3.0]])
        self.assertEqual(depth["data"]["asks"], [[100.0, 1.0, 1.0], [101.0, 2.0, 3.0]])
        self.assertEqual(error["type"], "error")
        self.assertEqual(error["data"]["classification"], "missing-field")
        self.assertEqual(metrics["upstream_state"], "CONNECTED")
        self.assertGreaterEqual(metrics["upstream_dropped_messages"], 1)
        self.assertEqual(metrics["active_symbols"], 0)
        self.assertTrue(upstream._closed.is_set())


if __name__ == "__main__":
    unittest.main()
