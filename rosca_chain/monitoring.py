# rosca_chain/monitoring.py
import time
import socket
import threading
import logging
from socketserver import ThreadingMixIn
from wsgiref.simple_server import make_server, WSGIServer

import psutil
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the main application."""
    allow_reuse_address = True
    daemon_threads = True


class Monitor:
    def __init__(self, host="127.0.0.1", port=9090):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Isolated registry so several clients can live in one process
        self.registry = CollectorRegistry()

        self.transitions = Counter('circle_transitions_total', 'Transitions computed by the engine',
                                   ['operation', 'status'], registry=self.registry)
        self.submissions = Counter('circle_submissions_total', 'Ledger submissions by outcome',
                                   ['outcome'], registry=self.registry)
        self.payouts = Counter('circle_payouts_total', 'Round payouts disbursed',
                               registry=self.registry)
        self.payout_amount = Counter('circle_payout_amount_total', 'Sum of disbursed pools',
                                     registry=self.registry)
        self.current_round = Gauge('circle_current_round', 'Current round per circle',
                                   ['circle'], registry=self.registry)
        self.submit_latency = Histogram('circle_submit_latency_seconds',
                                        'Latency of prove + submit', registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent',
                               registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent',
                                  registry=self.registry)

    def start_server(self, max_retries: int = 5, retry_delay: float = 2):
        """Creates and starts the Prometheus HTTP server with retry logic."""
        app = make_wsgi_app(self.registry)

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s "
                                       f"(attempt {attempt+1}/{max_retries})...")
                        time.sleep(retry_delay)
                    else:
                        logger.error(f"Failed to bind to port {self.port} after {max_retries} attempts")
                        raise
                else:
                    raise

    def stop_server(self):
        """Stops the HTTP server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def collect_system_metrics(self):
        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)

    def record_transition(self, operation: str, status: str):
        self.transitions.labels(operation=operation, status=status).inc()

    def record_submission(self, outcome: str, latency: float):
        self.submissions.labels(outcome=outcome).inc()
        self.submit_latency.observe(latency)

    def record_state(self, circle_id: bytes, current_round: int):
        self.current_round.labels(circle=circle_id.hex()[:16]).set(current_round)

    def record_payout(self, amount: int):
        self.payouts.inc()
        self.payout_amount.inc(amount)
