import unittest
import threading
import time
import sys
import os

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from urllib3 import HTTPHeaderDict

from corsproxy.cache import ResponseCache
from corsproxy.errors import UpstreamUnreachable
from corsproxy.headers import HOP_BY_HOP_HEADERS
from corsproxy.models import HTTPRequest, HTTPResponse
from corsproxy.proxy import CACHE_STATUS_HEADER, ProxyHandler, validate_target
from corsproxy.server import ProxyServer


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeForwarder:
    """Records forwarded requests and answers with a canned response."""

    def __init__(self, status_code: int = 200, body: bytes = b'upstream body',
                 headers: dict = None, error: Exception = None, delay: float = 0):
        self.status_code = status_code
        self.body = body
        self.headers = headers or {'Content-Type': 'text/plain'}
        self.error = error
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def forward(self, method, url, headers, body=b'', stream=False):
        with self._lock:
            self.calls.append({
                'method': method, 'url': url, 'headers': headers,
                'body': body, 'stream': stream
            })
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        response_headers = HTTPHeaderDict(self.headers)
        return HTTPResponse(
            status_code=self.status_code,
            headers=response_headers,
            body=iter([self.body]) if stream else self.body
        )


def make_request(method: str = 'GET', target: str = 'https://example.com/data?id=1',
                 headers: dict = None, body: bytes = b'') -> HTTPRequest:
    path = '/' if target is None else f'/?url={target}'
    return HTTPRequest(
        method=method,
        path=path.replace('?id=', '%3Fid%3D'),
        protocol='HTTP/1.1',
        headers=HTTPHeaderDict(headers or {'Host': 'proxy.local', 'Accept': '*/*'}),
        body=body,
        client_ip='127.0.0.1'
    )


class TestProxyHandler(unittest.TestCase):
    """Test cases for the request forwarding pipeline."""

    def setUp(self):
        """Set up a handler with a fake upstream and a controllable cache."""
        self.clock = FakeClock()
        self.cache = ResponseCache(ttl=30, clock=self.clock)
        self.forwarder = FakeForwarder()
        self.handler = ProxyHandler(self.forwarder, self.cache)

    def test_missing_target(self):
        """A request without url is rejected with 400 and never forwarded."""
        # Act
        response = self.handler.handle(make_request(target=None))

        # Assert
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.body, b'Target URL not provided')
        self.assertEqual(self.forwarder.calls, [])

    def test_invalid_target(self):
        """Targets that are not absolute http(s) URLs are rejected with 400."""
        for target in ('not a url', '/relative/path', 'example.com', 'http://',
                       'ftp://example.com/file', 'http://example.com:99999/',
                       'http://exa mple.com/', 'http://exa<mple.com/'):
            with self.subTest(target=target):
                response = self.handler.handle(make_request(target=target))

                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.body, b'Invalid URL format')
        self.assertEqual(self.forwarder.calls, [])

    def test_get_miss_then_hit(self):
        """Two GETs within the TTL make one upstream call and return the same bytes."""
        # Act
        first = self.handler.handle(make_request())
        second = self.handler.handle(make_request())

        # Assert
        self.assertEqual(len(self.forwarder.calls), 1)
        self.assertEqual(first.headers[CACHE_STATUS_HEADER], 'MISS')
        self.assertEqual(second.headers[CACHE_STATUS_HEADER], 'HIT')
        self.assertEqual(first.body, second.body)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.headers['Content-Type'], 'text/plain')
        self.assertEqual(second.headers['Content-Length'], str(len(b'upstream body')))

    def test_get_is_buffered(self):
        """Cacheable requests are forwarded in buffered mode."""
        response = self.handler.handle(make_request())

        self.assertFalse(self.forwarder.calls[0]['stream'])
        self.assertFalse(response.is_streamed)

    def test_cache_expiry(self):
        """After the TTL a repeated GET goes upstream again."""
        # Arrange
        self.handler.handle(make_request())

        # Act
        self.clock.now += 30
        response = self.handler.handle(make_request())

        # Assert
        self.assertEqual(len(self.forwarder.calls), 2)
        self.assertEqual(response.headers[CACHE_STATUS_HEADER], 'MISS')

    def test_cache_key_is_full_target(self):
        """Different query strings are cached separately."""
        self.handler.handle(make_request(target='https://example.com/data?id=1'))
        self.handler.handle(make_request(target='https://example.com/data?id=2'))

        self.assertEqual(len(self.forwarder.calls), 2)
        self.assertEqual(self.forwarder.calls[1]['url'], 'https://example.com/data?id=2')

    def test_non_get_bypasses_cache(self):
        """POST/PUT/DELETE/PATCH never read or populate the cache."""
        for method in ('POST', 'PUT', 'DELETE', 'PATCH'):
            with self.subTest(method=method):
                # Arrange
                calls_before = len(self.forwarder.calls)

                # Act
                first = self.handler.handle(make_request(method=method, body=b'{"a": 1}'))
                second = self.handler.handle(make_request(method=method, body=b'{"a": 1}'))

                # Assert
                self.assertEqual(len(self.forwarder.calls), calls_before + 2)
                self.assertNotIn(CACHE_STATUS_HEADER, first.headers)
                self.assertNotIn(CACHE_STATUS_HEADER, second.headers)
                self.assertTrue(self.forwarder.calls[-1]['stream'])
                self.assertEqual(self.forwarder.calls[-1]['body'], b'{"a": 1}')
        self.assertEqual(len(self.cache), 0)

    def test_post_does_not_serve_cached_get(self):
        """A cached GET is not used to answer a POST to the same target."""
        self.handler.handle(make_request())

        response = self.handler.handle(make_request(method='POST'))

        self.assertEqual(len(self.forwarder.calls), 2)
        self.assertNotIn(CACHE_STATUS_HEADER, response.headers)

    def test_status_passthrough(self):
        """Upstream 404 and 500 are relayed with their body and not cached."""
        for status in (404, 500):
            with self.subTest(status=status):
                # Arrange
                self.forwarder.status_code = status
                self.forwarder.body = b'{"error": "upstream"}'

                # Act
                first = self.handler.handle(make_request())
                second = self.handler.handle(make_request())

                # Assert
                self.assertEqual(first.status_code, status)
                self.assertEqual(first.body, b'{"error": "upstream"}')
                self.assertNotIn(CACHE_STATUS_HEADER, first.headers)
                self.assertNotIn(CACHE_STATUS_HEADER, second.headers)
        self.assertEqual(len(self.forwarder.calls), 4)
        self.assertEqual(len(self.cache), 0)

    def test_bodiless_statuses_get_no_content_length(self):
        """204 and 304 responses are relayed without a recomputed Content-Length."""
        # Arrange
        no_content = ProxyHandler(FakeForwarder(status_code=204, body=b''), ResponseCache(ttl=30))
        not_modified = ProxyHandler(
            FakeForwarder(status_code=304, body=b'', headers={'Content-Length': '120'}),
            ResponseCache(ttl=30)
        )

        # Act
        first = no_content.handle(make_request(method='GET'))
        second = not_modified.handle(make_request(method='GET'))

        # Assert
        self.assertEqual(first.status_code, 204)
        self.assertNotIn('Content-Length', first.headers)
        self.assertEqual(second.status_code, 304)
        self.assertEqual(second.headers['Content-Length'], '120')

    def test_upstream_unreachable(self):
        """Transport failures become a generic 500 without internal detail."""
        # Arrange
        self.forwarder.error = UpstreamUnreachable('GET https://example.com: connection refused to 10.1.2.3')

        # Act
        with self.assertLogs('corsproxy.proxy', level='ERROR') as logs:
            response = self.handler.handle(make_request())

        # Assert
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.body, b'Error fetching the requested URL')
        self.assertIn('10.1.2.3', logs.output[0])
        self.assertEqual(len(self.cache), 0)

    def test_hop_by_hop_stripped_both_ways(self):
        """Neither the upstream request nor the relayed response carries hop-by-hop headers."""
        # Arrange
        inbound = {name: 'x' for name in HOP_BY_HOP_HEADERS}
        inbound.update({'Host': 'proxy.local', 'Authorization': 'Bearer t'})
        self.forwarder.headers = {name.title(): 'x' for name in HOP_BY_HOP_HEADERS}
        self.forwarder.headers['Content-Type'] = 'text/plain'

        # Act
        response = self.handler.handle(make_request(headers=inbound))

        # Assert
        forwarded = self.forwarder.calls[0]['headers']
        self.assertFalse({name.lower() for name in forwarded} & (HOP_BY_HOP_HEADERS | {'host'}))
        self.assertEqual(forwarded['Authorization'], 'Bearer t')
        self.assertFalse({name.lower() for name in response.headers} & HOP_BY_HOP_HEADERS)
        cached = self.cache.get('https://example.com/data?id=1').header_dict()
        self.assertFalse({name.lower() for name in cached} & HOP_BY_HOP_HEADERS)

    def test_cache_disabled(self):
        """Without a cache GET is streamed and carries no cache status."""
        # Arrange
        handler = ProxyHandler(self.forwarder)

        # Act
        first = handler.handle(make_request())
        second = handler.handle(make_request())

        # Assert
        self.assertEqual(len(self.forwarder.calls), 2)
        self.assertTrue(first.is_streamed)
        self.assertNotIn(CACHE_STATUS_HEADER, second.headers)
        self.assertEqual(b''.join(second.iter_body()), b'upstream body')

    def test_concurrent_gets(self):
        """Concurrent GETs for one uncached target all receive complete responses."""
        # Arrange
        self.forwarder.body = b'x' * 65536
        self.forwarder.delay = 0.05
        results = []
        lock = threading.Lock()

        def fetch():
            response = self.handler.handle(make_request())
            with lock:
                results.append(response)

        # Act
        threads = [threading.Thread(target=fetch) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        # Assert
        self.assertEqual(len(results), 10)
        for response in results:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.body, b'x' * 65536)
        self.assertGreaterEqual(len(self.forwarder.calls), 1)
        self.assertEqual(self.cache.get('https://example.com/data?id=1').body, b'x' * 65536)


class TestValidateTarget(unittest.TestCase):
    """Test cases for target URL validation."""

    def test_accepts_absolute_urls(self):
        for target in ('http://example.com', 'https://example.com:8443/a/b?c=d#e',
                       'HTTPS://user:pw@example.com/'):
            with self.subTest(target=target):
                self.assertEqual(validate_target(target), target)


class TestModels(unittest.TestCase):
    """Test cases for request parsing and response serialization."""

    def test_request_parsing(self):
        """Test HTTP request parsing."""
        # Arrange
        request_data = (
            b"get /?url=https%3A%2F%2Fexample.com%2Fa%3Fb%3D1 HTTP/1.1\r\n"
            b"Host: localhost:2208\r\n"
            b"User-Agent: Mozilla/5.0\r\n"
            b"Accept: text/html\r\n"
            b"Accept: application/json\r\n"
        )

        # Act
        result = HTTPRequest.from_raw_data(request_data, client_ip='10.0.0.5')

        # Assert
        self.assertEqual(result.method, "GET")
        self.assertEqual(result.route, "/")
        self.assertEqual(result.protocol, "HTTP/1.1")
        self.assertEqual(result.headers['host'], "localhost:2208")
        self.assertEqual(result.headers.getlist('Accept'), ["text/html", "application/json"])
        self.assertEqual(result.target_url, "https://example.com/a?b=1")
        self.assertEqual(result.client_ip, '10.0.0.5')

    def test_request_without_target(self):
        for path in ('/', '/?url=', '/?other=1'):
            with self.subTest(path=path):
                request = HTTPRequest.from_raw_data(f"GET {path} HTTP/1.1\r\n".encode())

                self.assertIsNone(request.target_url)

    def test_malformed_request(self):
        for data in (b"", b"GET /\r\n", b"GET / HTTP/1.1\r\nNoColon\r\n",
                     b"GET / FTP/1.0\r\n", b"GET / HTTP/1.1\r\nBad : value\r\n"):
            with self.subTest(data=data):
                self.assertIsNone(HTTPRequest.from_raw_data(data))

    def test_error_response(self):
        """Test error response creation."""
        # Act
        response = HTTPResponse.create_error(404, "Not Found")
        response_bytes = response.to_bytes()

        # Assert
        self.assertTrue(response_bytes.startswith(b"HTTP/1.1 404 Not Found\r\n"))
        self.assertIn(b"Content-Type: text/plain", response_bytes)
        self.assertIn(b"Content-Length: 9\r\n", response_bytes)
        self.assertIn(b"Connection: close\r\n", response_bytes)
        self.assertTrue(response_bytes.endswith(b"\r\n\r\nNot Found"))

    def test_streamed_response(self):
        """Streamed bodies are drained in order and closed on demand."""
        # Arrange
        closed = []

        def body():
            try:
                yield b'a'
                yield b'b'
            finally:
                closed.append(True)

        response = HTTPResponse(status_code=200, body=body())

        # Act
        chunks = list(response.iter_body())
        response.close()

        # Assert
        self.assertTrue(response.is_streamed)
        self.assertEqual(chunks, [b'a', b'b'])
        self.assertEqual(closed, [True])


class TestProxyServer(unittest.TestCase):
    """Test cases for server construction."""

    def test_proxy_initialization(self):
        """Test proxy initialization with custom configuration."""
        # Arrange and Act
        custom_proxy = ProxyServer(host="127.0.0.1", port=8081, cache_ttl=10)

        # Assert
        self.assertEqual(custom_proxy.host, "127.0.0.1")
        self.assertEqual(custom_proxy.port, 8081)
        self.assertEqual(custom_proxy.cache.ttl, 10)
        custom_proxy.shutdown()

    def test_cache_disabled_with_zero_ttl(self):
        custom_proxy = ProxyServer(host="127.0.0.1", port=0, cache_ttl=0)

        self.assertIsNone(custom_proxy.cache)
        custom_proxy.shutdown()


if __name__ == '__main__':
    unittest.main()
