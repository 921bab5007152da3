import logging
import re
from typing import Optional
from urllib.parse import urlsplit

from urllib3.exceptions import LocationParseError
from urllib3.util import parse_url

from .cache import CacheEntry, ResponseCache
from .errors import InvalidTarget, MissingTarget, ProxyError, UpstreamUnreachable
from .forwarder import Forwarder
from .headers import HeaderFilter
from .models import HTTPRequest, HTTPResponse

logger = logging.getLogger(__name__)

CACHE_STATUS_HEADER = 'X-Proxy-Cache'
SUPPORTED_SCHEMES = ('http', 'https')
# Statuses that never carry a body of their own
BODILESS_STATUSES = (204, 304)

_INVALID_HOST_RE = re.compile(r'[\s<>"{}|\\^`\x00-\x1f\x7f]')


def validate_target(target: Optional[str]) -> str:
    """
    Check that target is an absolute http(s) URL.

    Raises:
        MissingTarget: if no target was given
        InvalidTarget: if the target does not parse as an absolute URL with a host
    """
    if not target:
        raise MissingTarget()
    try:
        parts = urlsplit(target)
        # Raises ValueError for out-of-range ports
        parts.port
        parse_url(target)
    except (ValueError, LocationParseError) as e:
        raise InvalidTarget(str(e)) from e
    if parts.scheme.lower() not in SUPPORTED_SCHEMES or not parts.hostname:
        raise InvalidTarget(f"Not an absolute http(s) URL: {target!r}")
    if _INVALID_HOST_RE.search(parts.hostname):
        raise InvalidTarget(f"Invalid host in {target!r}")
    return target


class ProxyHandler:
    """
    Runs one proxied request through validation, cache lookup, forwarding and
    cache update, and returns the response to write.

    GET requests are buffered and cached when a cache is configured; every
    other request is streamed and never touches the cache.
    """

    def __init__(self, forwarder: Forwarder, cache: Optional[ResponseCache] = None,
                 header_filter: Optional[HeaderFilter] = None):
        """
        Initialize the handler.

        Args:
            forwarder: Sends requests upstream
            cache: Response cache; None disables caching
            header_filter: Strip policy for inbound and upstream headers
        """
        self._forwarder = forwarder
        self._cache = cache
        self._header_filter = header_filter or HeaderFilter()

    def handle(self, request: HTTPRequest) -> HTTPResponse:
        """Proxy the request. Errors come back as plain-text error responses."""
        target = request.target_url
        try:
            target = validate_target(target)
            cacheable = request.method == 'GET' and self._cache is not None

            if cacheable:
                entry = self._cache.get(target)
                if entry is not None:
                    logger.debug(f"Cache hit for {target}")
                    return self._from_cache(entry)

            response = self._forwarder.forward(
                request.method,
                target,
                self._header_filter.filter(request.headers),
                request.body,
                stream=not cacheable
            )
            response.headers = self._header_filter.filter_response(response.headers)

            if not response.is_streamed and request.method != 'HEAD' \
                    and not _is_bodiless(response.status_code):
                response.headers['Content-Length'] = str(len(response.body))

            if cacheable and 200 <= response.status_code < 300:
                self._cache.set(target, response.status_code, response.headers, response.body)
                response.headers[CACHE_STATUS_HEADER] = 'MISS'

            return response

        except UpstreamUnreachable as e:
            logger.error(f"Proxy error: {e}")
            return HTTPResponse.create_error(e.status_code, e.message)
        except ProxyError as e:
            logger.info(f"Rejected target {target!r}: {e.message}")
            return HTTPResponse.create_error(e.status_code, e.message)

    def _from_cache(self, entry: CacheEntry) -> HTTPResponse:
        headers = entry.header_dict()
        headers[CACHE_STATUS_HEADER] = 'HIT'
        return HTTPResponse(status_code=entry.status_code, headers=headers, body=entry.body)


def _is_bodiless(status_code: int) -> bool:
    return status_code < 200 or status_code in BODILESS_STATUSES
