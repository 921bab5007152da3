import logging
from typing import Iterator, Optional

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3 import HTTPHeaderDict
from urllib3.util import SKIP_HEADER

from .errors import UpstreamUnreachable
from .models import HTTPResponse

logger = logging.getLogger(__name__)

# Recomputed by the HTTP client for the outbound body
FRAMING_HEADERS = ('content-length', 'expect')


class Forwarder:
    """Sends requests to upstream targets over a shared connection pool."""

    def __init__(self, pool_connections: int = 10, pool_maxsize: int = 50,
                 chunk_size: int = 8192, session: Optional[requests.Session] = None):
        """
        Initialize the forwarder.

        Args:
            pool_connections: Number of per-host pools kept alive
            pool_maxsize: Ceiling of concurrent sockets per host; extra requests wait
            chunk_size: Read size when relaying response bodies
            session: Preconfigured session, mainly for tests
        """
        self._chunk_size = chunk_size
        self._session = session or requests.Session()
        # Only the caller's headers go upstream
        self._session.headers.clear()
        self._session.trust_env = False
        adapter = HTTPAdapter(
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            pool_block=True,
            max_retries=0
        )
        self._session.mount('http://', adapter)
        self._session.mount('https://', adapter)

    def forward(self, method: str, url: str, headers: HTTPHeaderDict,
                body: bytes = b'', stream: bool = False) -> HTTPResponse:
        """
        Send one request upstream and relay whatever status comes back.

        The call has no timeout. Response bodies are passed through undecoded, so
        Content-Encoding and Content-Length stay valid.

        Args:
            method: HTTP method of the inbound request
            url: Validated absolute target URL
            headers: Already filtered inbound headers
            body: Raw inbound body
            stream: Return the body as a chunk generator instead of bytes

        Raises:
            UpstreamUnreachable: on any transport-level failure
        """
        # Host is left to urllib3, which derives it from each URL it requests,
        # redirect targets included
        outbound = {}
        for name in headers:
            lowered = name.lower()
            if lowered in FRAMING_HEADERS or lowered == 'host':
                continue
            # Cookie pairs are separated by "; ", never by a comma
            separator = '; ' if lowered == 'cookie' else ', '
            outbound[name] = separator.join(headers.getlist(name))
        # Keep urllib3 from adding its own User-Agent when the caller sent none
        if not any(name.lower() == 'user-agent' for name in outbound):
            outbound['User-Agent'] = SKIP_HEADER

        try:
            upstream = self._session.request(
                method,
                url,
                headers=outbound,
                data=body or None,
                stream=True,
                timeout=None
            )
        except requests.RequestException as e:
            raise UpstreamUnreachable(f"{method} {url}: {e}") from e

        response_headers = HTTPHeaderDict()
        for name, value in upstream.raw.headers.iteritems():
            response_headers.add(name, value)

        if stream:
            response_body = UpstreamBody(upstream, self._chunk_size)
        else:
            try:
                response_body = b''.join(_read_chunks(upstream, self._chunk_size))
            finally:
                upstream.close()

        logger.debug(f"{method} {url} -> {upstream.status_code}")
        return HTTPResponse(
            status_code=upstream.status_code,
            status_message=upstream.reason or '',
            headers=response_headers,
            body=response_body
        )

    def close(self) -> None:
        """Close every pooled connection."""
        self._session.close()


class UpstreamBody:
    """Streamed upstream body. Closing it returns the connection to the pool."""

    def __init__(self, upstream: requests.Response, chunk_size: int = 8192):
        self._upstream = upstream
        self._chunk_size = chunk_size

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield from _read_chunks(self._upstream, self._chunk_size)
        finally:
            self.close()

    def close(self) -> None:
        self._upstream.close()


def _read_chunks(upstream: requests.Response, chunk_size: int) -> Iterator[bytes]:
    try:
        yield from upstream.raw.stream(chunk_size, decode_content=False)
    except (urllib3.exceptions.HTTPError, requests.RequestException, OSError) as e:
        raise UpstreamUnreachable(f"Reading body of {upstream.url}: {e}") from e
