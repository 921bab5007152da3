import logging
import re
from typing import Iterable, Mapping, Union

from urllib3 import HTTPHeaderDict

from .errors import HeaderRejected

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset([
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailers',
    'transfer-encoding',
    'upgrade',
])

PRIVACY_HEADERS = frozenset(['referer', 'user-agent'])

# RFC 7230 token characters
_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
# Control characters other than horizontal tab
_ILLEGAL_VALUE_RE = re.compile(r'[\x00-\x08\x0a-\x1f\x7f]')

HeadersLike = Union[HTTPHeaderDict, Mapping[str, str]]


def _iter_pairs(headers: HeadersLike):
    if isinstance(headers, HTTPHeaderDict):
        return headers.iteritems()
    return headers.items()


def check_header(name: str, value: str) -> None:
    """
    Ensure a header can be written back onto the wire.

    Raises:
        HeaderRejected: if the name is not a token or the value holds control characters
    """
    if not _TOKEN_RE.match(name):
        raise HeaderRejected(f"Invalid header name {name!r}")
    if _ILLEGAL_VALUE_RE.search(value):
        raise HeaderRejected(f"Invalid value for header {name!r}")


class HeaderFilter:
    """Removes hop-by-hop and proxy-unsafe headers from a header set."""

    def __init__(self, strip_host: bool = True, strip_privacy: bool = False,
                 extra: Iterable[str] = ()):
        """
        Build the strip policy.

        Args:
            strip_host: Drop the inbound Host so the proxy's own host never leaks upstream
            strip_privacy: Also drop Referer and User-Agent
            extra: Additional header names to drop
        """
        names = set(HOP_BY_HOP_HEADERS)
        if strip_host:
            names.add('host')
        if strip_privacy:
            names.update(PRIVACY_HEADERS)
        names.update(name.lower() for name in extra)
        self._stripped = frozenset(names)

    @property
    def stripped(self) -> frozenset:
        """Lowercase names removed by this filter."""
        return self._stripped

    def filter(self, headers: HeadersLike) -> HTTPHeaderDict:
        """
        Return a new header set without the stripped headers.

        Headers listed in a Connection header are connection-specific as well
        and get dropped along with it.
        """
        stripped = set(self._stripped)
        if isinstance(headers, HTTPHeaderDict):
            connection = headers.getlist('connection')
        else:
            connection = [v for k, v in headers.items() if k.lower() == 'connection']
        for value in connection:
            stripped.update(token.strip().lower() for token in value.split(',') if token.strip())

        filtered = HTTPHeaderDict()
        for name, value in _iter_pairs(headers):
            if name.lower() not in stripped:
                filtered.add(name, value)
        return filtered

    def filter_response(self, headers: HeadersLike) -> HTTPHeaderDict:
        """Filter upstream response headers, dropping any that cannot be re-emitted."""
        filtered = HTTPHeaderDict()
        for name, value in self.filter(headers).iteritems():
            try:
                check_header(name, value)
            except HeaderRejected as e:
                logger.debug(f"Dropping response header: {e}")
                continue
            filtered.add(name, value)
        return filtered
