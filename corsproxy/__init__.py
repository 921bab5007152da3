"""
A forwarding CORS proxy with response caching.
"""

from .server import ProxyServer
from .handler import RequestHandler
from .proxy import ProxyHandler
from .forwarder import Forwarder
from .cache import ResponseCache, CacheEntry
from .headers import HeaderFilter, HOP_BY_HOP_HEADERS
from .ratelimit import RateLimiter
from .cors import CorsPolicy
from .models import HTTPRequest, HTTPResponse
from .config import ProxyConfig

__version__ = '1.0.0'

__all__ = [
    'ProxyServer', 'RequestHandler', 'ProxyHandler', 'Forwarder', 'ResponseCache',
    'CacheEntry', 'HeaderFilter', 'HOP_BY_HOP_HEADERS', 'RateLimiter', 'CorsPolicy',
    'HTTPRequest', 'HTTPResponse', 'ProxyConfig'
]
