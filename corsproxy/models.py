from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Iterable, Iterator, Optional, Union
from urllib.parse import parse_qs, urlsplit

from urllib3 import HTTPHeaderDict

Body = Union[bytes, Iterable[bytes]]


def _reason(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return ''


@dataclass
class HTTPRequest:
    """Model representing an inbound HTTP request."""
    method: str
    path: str
    protocol: str
    headers: HTTPHeaderDict
    body: bytes = b''
    client_ip: str = ''

    @classmethod
    def from_raw_data(cls, request_data: bytes, client_ip: str = '') -> Optional['HTTPRequest']:
        """Create HTTPRequest instance from the raw request line and header block."""
        try:
            lines = request_data.decode('latin-1').split('\n')
            if not lines:
                return None

            # Parse request line
            method, path, protocol = lines[0].strip().split()
            if not protocol.startswith('HTTP/'):
                return None

            # Parse headers
            headers = HTTPHeaderDict()
            for line in lines[1:]:
                line = line.rstrip('\r')
                if not line:
                    break
                key, value = line.split(':', 1)
                if not key or key != key.strip():
                    return None
                headers.add(key, value.strip())

            return cls(
                method=method.upper(),
                path=path,
                protocol=protocol,
                headers=headers,
                client_ip=client_ip
            )
        except ValueError:
            return None

    @property
    def route(self) -> str:
        """Request path without the query string."""
        return urlsplit(self.path).path or '/'

    @property
    def target_url(self) -> Optional[str]:
        """The first `url` query parameter, or None if absent or empty."""
        values = parse_qs(urlsplit(self.path).query).get('url')
        return values[0] if values else None


@dataclass
class HTTPResponse:
    """Model representing an HTTP response written back to the caller."""
    status_code: int
    headers: HTTPHeaderDict = field(default_factory=HTTPHeaderDict)
    body: Body = b''
    status_message: str = ''

    def __post_init__(self):
        if not self.status_message:
            self.status_message = _reason(self.status_code)

    @property
    def is_streamed(self) -> bool:
        return not isinstance(self.body, (bytes, bytearray))

    def head_bytes(self) -> bytes:
        """Status line and header block, terminated by the blank line."""
        lines = [f"HTTP/1.1 {self.status_code} {self.status_message}".rstrip()]
        for name, value in self.headers.iteritems():
            lines.append(f"{name}: {value}")
        lines.append('Connection: close')
        return ('\r\n'.join(lines) + '\r\n\r\n').encode('latin-1')

    def iter_body(self) -> Iterator[bytes]:
        if self.is_streamed:
            yield from self.body
        elif self.body:
            yield bytes(self.body)

    def to_bytes(self) -> bytes:
        """Full response; streamed bodies are drained."""
        return self.head_bytes() + b''.join(self.iter_body())

    def close(self) -> None:
        """Release whatever backs a streamed body."""
        close = getattr(self.body, 'close', None)
        if close is not None:
            close()

    @classmethod
    def create_error(cls, status_code: int, message: str) -> 'HTTPResponse':
        """Create a plain-text error response."""
        body = message.encode('utf-8')
        headers = HTTPHeaderDict()
        headers['Content-Type'] = 'text/plain; charset=utf-8'
        headers['Content-Length'] = str(len(body))
        return cls(status_code=status_code, headers=headers, body=body)
