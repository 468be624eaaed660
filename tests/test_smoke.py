import unittest

from fastapi.testclient import TestClient

from app.main import app


class SmokeTest(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(app)

    def test_health(self):
        res = self.client.get('/health')

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {'status': 'ok'})

    def test_relay_metrics_contains_operational_fields(self):
        res = self.client.get('/v1/metrics/relay')
        self.assertEqual(res.status_code, 200)
        payload = res.json()

        for key in (
            'upstream_state',
            'upstream_held_symbols',
            'upstream_reconnect_count',
            'upstream_last_error',
            'upstream_dropped_messages',
            'clients',
            'active_symbols',
            'events_dispatched',
            'delivery_failures',
            'connections_active',
            'rejected_commands',
        ):
            self.assertIn(key, payload)

    def test_subscriptions_listing(self):
        registry = app.state.registry
        upstream = app.state.connector
        registry.register_client('smoke-client', _NullSink())
        try:
            registry.add_interest('smoke-client', 'ADAUSDT')
            res = self.client.get('/v1/subscriptions')
        finally:
            registry.remove_client('smoke-client')

        self.assertEqual(res.status_code, 200)
        self.assertIn({'symbol': 'ADAUSDT', 'refcount': 1}, res.json())
        self.assertNotIn('ADAUSDT', upstream.held_symbols())

    def test_cors_allows_configured_origin(self):
        res = self.client.get('/health', headers={'Origin': 'http://localhost:3000'})

        self.assertEqual(res.headers.get('access-control-allow-origin'), 'http://localhost:3000')


class _NullSink:
    def send(self, payload: str) -> None:
        return None


if __name__ == '__main__':
    unittest.main()
