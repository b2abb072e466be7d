"""
Tests for the Prometheus metrics wrapper.
"""
import unittest
import urllib.request

from rosca_chain.monitoring import Monitor


class TestMonitor(unittest.TestCase):
    def setUp(self):
        self.monitor = Monitor()

    def sample(self, name, labels=None):
        return self.monitor.registry.get_sample_value(name, labels or {})

    def test_transition_counter(self):
        self.monitor.record_transition('ADD_MEMBER', 'ok')
        self.monitor.record_transition('ADD_MEMBER', 'ok')
        self.monitor.record_transition('ADD_MEMBER', 'CIRCLE_FULL')
        self.assertEqual(self.sample('circle_transitions_total',
                                     {'operation': 'ADD_MEMBER', 'status': 'ok'}), 2)
        self.assertEqual(self.sample('circle_transitions_total',
                                     {'operation': 'ADD_MEMBER', 'status': 'CIRCLE_FULL'}), 1)

    def test_submission_and_payout(self):
        self.monitor.record_submission('committed', 0.25)
        self.monitor.record_payout(300)
        self.assertEqual(self.sample('circle_submissions_total', {'outcome': 'committed'}), 1)
        self.assertEqual(self.sample('circle_submit_latency_seconds_count'), 1)
        self.assertEqual(self.sample('circle_payout_amount_total'), 300)

    def test_state_gauge(self):
        self.monitor.record_state(b'\xab' * 32, 2)
        self.assertEqual(self.sample('circle_current_round', {'circle': 'ab' * 8}), 2)

    def test_registries_are_isolated(self):
        other = Monitor()
        self.monitor.record_payout(1)
        self.assertEqual(other.registry.get_sample_value('circle_payouts_total'), 0)

    def test_system_metrics(self):
        self.monitor.collect_system_metrics()
        self.assertIsNotNone(self.sample('system_memory_percent'))

    def test_server_lifecycle(self):
        monitor = Monitor(port=0)
        monitor.start_server()
        try:
            monitor.record_payout(42)
            port = monitor.server.server_port
            with urllib.request.urlopen(f"http://127.0.0.1:{port}/") as response:
                body = response.read().decode()
            self.assertIn('circle_payout_amount_total 42.0', body)
        finally:
            monitor.stop_server()
        self.assertIsNone(monitor.server)
        # Stopping twice is harmless
        monitor.stop_server()


if __name__ == '__main__':
    unittest.main()
