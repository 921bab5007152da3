import socket
import threading
import logging
import time
from typing import Optional

from .cache import ResponseCache
from .config import ProxyConfig
from .cors import CorsPolicy
from .forwarder import Forwarder
from .handler import RequestHandler
from .headers import HeaderFilter
from .proxy import ProxyHandler
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

# Seconds between sweeps of expired cache entries and rate limit windows
PURGE_INTERVAL = 60


class ProxyServer:
    """Core server implementation for the proxy."""

    def __init__(self, host: str = "localhost", port: int = 2208,
                 cache_ttl: float = 30, cache_max_entries: Optional[int] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 cors: Optional[CorsPolicy] = None,
                 header_filter: Optional[HeaderFilter] = None,
                 forwarder: Optional[Forwarder] = None,
                 max_connections: int = 128, max_body_size: int = 5 * 1024 * 1024,
                 client_timeout: Optional[float] = None):
        """
        Initialize the proxy server.

        Args:
            host: Host address to bind the proxy
            port: Port number to listen on, 0 for any free port
            cache_ttl: Seconds GET responses stay cached, 0 disables the cache
            cache_max_entries: Optional bound on cached responses
            rate_limiter: Gate for inbound requests, None admits everything
            cors: Cross-origin policy, None sends no CORS headers
            header_filter: Strip policy for forwarded headers
            forwarder: Upstream client, a pooled Forwarder by default
            max_connections: Listen backlog
            max_body_size: Largest accepted request body in bytes
            client_timeout: Client socket timeout in seconds, None for no timeout
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections

        self._cache = ResponseCache(cache_ttl, cache_max_entries) if cache_ttl > 0 else None
        self._forwarder = forwarder or Forwarder()
        self._rate_limiter = rate_limiter

        # Initialize server socket
        self._server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Initialize request handler
        self._handler = RequestHandler(
            ProxyHandler(self._forwarder, self._cache, header_filter),
            rate_limiter=rate_limiter,
            cors=cors,
            max_body_size=max_body_size,
            timeout=client_timeout
        )

        self._running = False
        self._ready = threading.Event()
        self._last_purge = time.monotonic()

    @classmethod
    def from_config(cls, config: ProxyConfig) -> 'ProxyServer':
        """Build a server from a loaded configuration."""
        rate_limit = config.get('rate_limit')
        rate_limiter = None
        if rate_limit:
            rate_limiter = RateLimiter(rate_limit['window_ms'], rate_limit['max'])

        return cls(
            host=config.get('host'),
            port=config.get('port'),
            cache_ttl=config.get('cache_ttl'),
            cache_max_entries=config.get('cache_max_entries'),
            rate_limiter=rate_limiter,
            cors=CorsPolicy() if config.get('cors') else None,
            header_filter=HeaderFilter(strip_privacy=bool(config.get('strip_privacy_headers'))),
            forwarder=Forwarder(pool_maxsize=config.get('pool_maxsize')),
            max_connections=config.get('max_connections'),
            max_body_size=config.get('max_body_size'),
            client_timeout=config.get('client_timeout')
        )

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the port number; the bound port once the server is listening."""
        return self._port

    @property
    def cache(self) -> Optional[ResponseCache]:
        """Get the response cache, None when caching is disabled."""
        return self._cache

    @property
    def server_socket(self) -> socket.socket:
        """Get the server socket."""
        return self._server_socket

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the server is listening."""
        return self._ready.wait(timeout)

    def start(self) -> None:
        """Start the proxy server."""
        self._running = True
        try:
            self._server_socket.bind((self._host, self._port))
            self._port = self._server_socket.getsockname()[1]
            self._server_socket.listen(self._max_connections)
            self._ready.set()
            logger.info(f"CORS proxy started on {self._host}:{self.port}")

            while self._running:
                try:
                    client_socket, client_address = self._server_socket.accept()
                    if not self._running:
                        client_socket.close()
                        break

                    # Handle each client in a separate thread
                    thread = threading.Thread(
                        target=self._handler.handle_client,
                        args=(client_socket, client_address)
                    )
                    thread.daemon = True
                    thread.start()
                    self._purge_if_due()
                except OSError as e:
                    if self._running:  # Only log if we're still meant to be running
                        logger.error(f"Server error: {e}")

        finally:
            self._server_socket.close()

    def _purge_if_due(self) -> None:
        now = time.monotonic()
        if now - self._last_purge < PURGE_INTERVAL:
            return
        self._last_purge = now
        if self._cache is not None:
            self._cache.purge_expired()
        if self._rate_limiter is not None:
            self._rate_limiter.purge_expired()

    def shutdown(self) -> None:
        """Shutdown the proxy server gracefully."""
        was_listening = self._ready.is_set()
        self._running = False
        # Create a dummy connection to unblock accept()
        if was_listening:
            try:
                with socket.create_connection((self._host, self._port), timeout=1):
                    pass
            except OSError:
                pass
        self._server_socket.close()
        self._forwarder.close()
        if self._cache is not None:
            self._cache.close()
        logger.info("CORS proxy stopped")
