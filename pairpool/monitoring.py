# pairpool/monitoring.py
import socket
import threading
import time
import logging
from socketserver import ThreadingMixIn
from wsgiref.simple_server import make_server, WSGIServer

import psutil
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app

from pairpool.config import MonitoringConfig

logger = logging.getLogger(__name__)


# Threaded WSGI server so scrapes never block pool operations
class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that handles each scrape in its own thread."""
    allow_reuse_address = True
    daemon_threads = True


class PoolMonitor:
    def __init__(self, config: MonitoringConfig = None):
        self.config = config or MonitoringConfig()
        self.host = self.config.host
        self.port = self.config.port
        self.server = None
        self.thread = None
        self.pool = None
        self.process = psutil.Process()

        # Isolated registry so several pools can be monitored in one process
        self.registry = CollectorRegistry()

        self.operation_counter = Counter('pool_operations_total', 'Pool operations by kind and outcome', ['kind', 'status'], registry=self.registry)
        self.operation_latency = Histogram('pool_operation_latency_seconds', 'Time to run a pool operation', ['kind'], registry=self.registry)
        self.swap_volume_in = Counter('pool_swap_volume_in_total', 'Units provided to swaps', ['asset'], registry=self.registry)
        self.swap_volume_out = Counter('pool_swap_volume_out_total', 'Units paid out by swaps', ['asset'], registry=self.registry)
        self.reserve = Gauge('pool_reserve', 'Current reserve of each asset', ['asset'], registry=self.registry)
        self.amm_k = Gauge('pool_invariant_k', 'Constant product k', registry=self.registry)
        self.total_shares = Gauge('pool_total_shares', 'Outstanding pool shares', registry=self.registry)
        self.cpu_usage = Gauge('process_cpu_percent', 'Current process CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('process_memory_rss_bytes', 'Current process resident memory', registry=self.registry)

        if self.config.enabled:
            self.start_server()

    def attach(self, pool):
        """Record every operation and swap of pool."""
        self.pool = pool
        pool.add_operation_listener(self.record_operation)
        pool.add_swap_listener(self.record_swap)
        self.update()

    def start_server(self):
        """Create and start the metrics HTTP server with retry logic."""
        app = make_wsgi_app(self.registry)

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Metrics server started on http://{self.host}:{self.server.server_port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
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
            logger.info("Metrics server stopped.")

    def update(self):
        if self.pool is not None:
            state = self.pool.snapshot()
            # Gauges are floats; very large values lose precision but not order
            self.reserve.labels(asset=self.pool.token_a.symbol).set(state.reserve_a)
            self.reserve.labels(asset=self.pool.token_b.symbol).set(state.reserve_b)
            self.amm_k.set(state.constant_product)
            self.total_shares.set(state.total_shares)

        self.cpu_usage.set(self.process.cpu_percent())
        self.memory_usage.set(self.process.memory_info().rss)

    def record_operation(self, kind: str, status: str, latency: float):
        self.operation_counter.labels(kind=kind, status=status).inc()
        self.operation_latency.labels(kind=kind).observe(latency)
        if status == 'committed':
            self.update()

    def record_swap(self, record):
        self.swap_volume_in.labels(asset=record.asset_in).inc(record.amount_in)
        self.swap_volume_out.labels(asset=record.asset_out).inc(record.amount_out)
