import threading
import time
import unittest
from unittest.mock import Mock

from fastapi.testclient import TestClient

from app.main import app


class AppLifecycleWsTest(unittest.TestCase):
    def test_ws_worker_starts_on_startup_and_stops_gracefully_on_shutdown(self):
        connector = app.state.connector
        original_stop = connector.stop
        original_run_with_reconnect = connector.run_with_reconnect

        started = threading.Event()
        stopped = threading.Event()

        stop_mock = Mock(side_effect=original_stop)

        def run_with_reconnect_mock(**kwargs):
            started.set()
            while connector.running:
                time.sleep(0.01)
            stopped.set()

        connector.stop = stop_mock
        connector.run_with_reconnect = Mock(side_effect=run_with_reconnect_mock)

        try:
            with TestClient(app):
                self.assertTrue(started.wait(0.3), "WS worker did not start on startup")
                connector.run_with_reconnect.assert_called_once_with()
                self.assertTrue(connector.running)
                stop_mock.assert_not_called()

            stop_mock.assert_called_once_with()
            self.assertTrue(stopped.wait(0.3), "WS worker did not stop after shutdown")
            self.assertFalse(app.state.ws_worker_thread.is_alive())
        finally:
            connector.stop = original_stop
            connector.run_with_reconnect = original_run_with_reconnect

    def test_settings_are_applied_to_relay_components_on_startup(self):
        connector = app.state.connector
        original_run_with_reconnect = connector.run_with_reconnect
        connector.run_with_reconnect = Mock(return_value=None)
        settings = app.state.get_settings()

        try:
            with TestClient(app):
                self.assertEqual(connector.url, settings.RELAY_UPSTREAM_URL)
                self.assertEqual(list(connector.streams), settings.RELAY_STREAMS)
                self.assertEqual(connector.backoff_cap_sec, settings.RELAY_BACKOFF_CAP_SEC)
                self.assertEqual(connector.send_timeout_sec, settings.RELAY_UPSTREAM_SEND_TIMEOUT_SEC)
                self.assertEqual(app.state.client_gateway.queue_size, settings.RELAY_CLIENT_QUEUE_SIZE)
        finally:
            connector.run_with_reconnect = original_run_with_reconnect


if __name__ == '__main__':
    unittest.main()
