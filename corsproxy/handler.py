import socket
import logging
from typing import BinaryIO, Optional, Tuple

from urllib3 import HTTPHeaderDict

from .cors import CorsPolicy
from .errors import BadRequest, HeadersTooLarge, NotFound, PayloadTooLarge, ProxyError
from .models import HTTPRequest, HTTPResponse
from .proxy import ProxyHandler
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)
access_logger = logging.getLogger('corsproxy.access')

MAX_LINE = 8192
MAX_HEADER_BYTES = 65536


class ResponseWriter:
    """Writes one response to a client socket, at most once."""

    def __init__(self, client_socket: socket.socket):
        self._socket = client_socket
        self._headers_sent = False

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    def send(self, response: HTTPResponse, head_only: bool = False) -> None:
        if self._headers_sent:
            raise RuntimeError("Response headers already sent")
        # Set before writing: a partial status line must not be followed by another
        self._headers_sent = True
        self._socket.sendall(response.head_bytes())
        if head_only:
            return
        for chunk in response.iter_body():
            if chunk:
                self._socket.sendall(chunk)

    def send_interim(self, status_line: bytes) -> None:
        """Send a 1xx response, which does not count as the final status."""
        self._socket.sendall(status_line + b'\r\n\r\n')


class RequestHandler:
    """Handles processing of individual client connections."""

    def __init__(self, proxy: ProxyHandler, rate_limiter: Optional[RateLimiter] = None,
                 cors: Optional[CorsPolicy] = None, max_body_size: int = 5 * 1024 * 1024,
                 timeout: Optional[float] = None):
        """
        Initialize the request handler.

        Args:
            proxy: Pipeline that proxies admitted requests
            rate_limiter: Gate applied before proxying; None admits everything
            cors: Cross-origin policy; None sends no CORS headers
            max_body_size: Largest accepted request body in bytes
            timeout: Client socket timeout in seconds, None for no timeout
        """
        self._proxy = proxy
        self._rate_limiter = rate_limiter
        self._cors = cors
        self._max_body_size = max_body_size
        self._timeout = timeout

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        """
        Handle an individual client connection.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
        """
        client_socket.settimeout(self._timeout)
        writer = ResponseWriter(client_socket)
        response = None

        try:
            with client_socket.makefile('rb') as rfile:
                request = self._read_request(rfile, writer, client_address[0])
            if request is None:
                return

            response = self._dispatch(request)
            writer.send(response, head_only=request.method == 'HEAD')

        except ProxyError as e:
            if writer.headers_sent:
                logger.warning(f"Response to {client_address} aborted mid-body: {e}")
            else:
                self._send_error(writer, e.status_code, e.message, client_address)
        except OSError as e:
            logger.info(f"Connection with {client_address} closed early: {e}")
        except Exception:
            logger.exception(f"Error handling client {client_address}")
            if not writer.headers_sent:
                self._send_error(writer, 500, "Internal Server Error", client_address)
        finally:
            if response is not None:
                response.close()
            client_socket.close()

    def _dispatch(self, request: HTTPRequest) -> HTTPResponse:
        """Run CORS, rate limiting and the access log around the proxy pipeline."""
        if self._cors is not None and self._cors.is_preflight(request):
            return self._cors.preflight_response()

        if self._rate_limiter is not None and \
                not self._rate_limiter.allow(request.client_ip, request.route):
            response = HTTPResponse.create_error(429, "Too many requests")
        else:
            access_logger.info(
                f"{request.method} {request.client_ip} {request.target_url}",
                extra={'method': request.method, 'ip': request.client_ip,
                       'url': request.target_url}
            )
            if request.route == '/':
                response = self._proxy.handle(request)
            else:
                response = HTTPResponse.create_error(NotFound.status_code, NotFound.message)

        if self._cors is not None:
            self._cors.apply(response)
        return response

    def _send_error(self, writer: ResponseWriter, status_code: int, message: str,
                    client_address: Tuple[str, int]) -> None:
        response = HTTPResponse.create_error(status_code, message)
        if self._cors is not None:
            self._cors.apply(response)
        try:
            writer.send(response)
        except OSError as e:
            logger.info(f"Could not send {status_code} to {client_address}: {e}")

    def _read_request(self, rfile: BinaryIO, writer: ResponseWriter,
                      client_ip: str) -> Optional[HTTPRequest]:
        """Read the complete HTTP request from the client connection."""
        head = bytearray()
        while True:
            line = rfile.readline(MAX_LINE + 1)
            if not line:
                if head:
                    raise BadRequest("Connection closed inside the header block")
                return None
            if len(line) > MAX_LINE:
                raise HeadersTooLarge()
            # HTTP messages have headers and body separated by an empty line
            if line in (b'\r\n', b'\n'):
                if not head:
                    continue
                break
            head.extend(line)
            if len(head) > MAX_HEADER_BYTES:
                raise HeadersTooLarge()

        request = HTTPRequest.from_raw_data(bytes(head), client_ip=client_ip)
        if request is None:
            raise BadRequest("Malformed request head")

        if request.headers.get('Expect', '').lower() == '100-continue':
            writer.send_interim(b'HTTP/1.1 100 Continue')

        request.body = self._read_body(rfile, request.headers)
        return request

    def _read_body(self, rfile: BinaryIO, headers: HTTPHeaderDict) -> bytes:
        transfer_encoding = headers.get('Transfer-Encoding', '').lower()
        if transfer_encoding:
            if transfer_encoding.split(',')[-1].strip() != 'chunked':
                raise BadRequest(f"Unsupported transfer coding {transfer_encoding!r}")
            return self._read_chunked(rfile)

        lengths = set(headers.getlist('Content-Length'))
        if not lengths:
            return b''
        if len(lengths) > 1:
            raise BadRequest("Conflicting Content-Length headers")
        try:
            content_length = int(lengths.pop())
        except ValueError:
            raise BadRequest("Invalid Content-Length")
        if content_length < 0:
            raise BadRequest("Invalid Content-Length")
        if content_length > self._max_body_size:
            raise PayloadTooLarge()

        body = rfile.read(content_length)
        if len(body) < content_length:
            raise BadRequest("Connection closed inside the body")
        return body

    def _read_chunked(self, rfile: BinaryIO) -> bytes:
        body = bytearray()
        while True:
            size_line = rfile.readline(MAX_LINE + 1)
            if not size_line or len(size_line) > MAX_LINE:
                raise BadRequest("Invalid chunk size line")
            try:
                size = int(size_line.split(b';', 1)[0].strip(), 16)
            except ValueError:
                raise BadRequest("Invalid chunk size")
            if size == 0:
                break
            if len(body) + size > self._max_body_size:
                raise PayloadTooLarge()
            chunk = rfile.read(size)
            if len(chunk) < size:
                raise BadRequest("Connection closed inside a chunk")
            body.extend(chunk)
            rfile.readline(MAX_LINE + 1)

        # Trailer section, ignored
        while True:
            line = rfile.readline(MAX_LINE + 1)
            if not line or line in (b'\r\n', b'\n'):
                break
        return bytes(body)
