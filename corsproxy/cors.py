from dataclasses import dataclass
from typing import Tuple

from urllib3 import HTTPHeaderDict

from .models import HTTPRequest, HTTPResponse


@dataclass(frozen=True)
class CorsPolicy:
    """Cross-origin headers added to every response, and the preflight reply."""
    origin: str = '*'
    methods: Tuple[str, ...] = ('GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'OPTIONS')
    allowed_headers: Tuple[str, ...] = ('Content-Type', 'Authorization', 'Accept')

    def is_preflight(self, request: HTTPRequest) -> bool:
        return (request.method == 'OPTIONS'
                and 'Access-Control-Request-Method' in request.headers)

    def preflight_response(self) -> HTTPResponse:
        headers = HTTPHeaderDict()
        headers['Access-Control-Allow-Origin'] = self.origin
        headers['Access-Control-Allow-Methods'] = ','.join(self.methods)
        headers['Access-Control-Allow-Headers'] = ','.join(self.allowed_headers)
        headers['Content-Length'] = '0'
        return HTTPResponse(status_code=204, headers=headers)

    def apply(self, response: HTTPResponse) -> HTTPResponse:
        """Stamp the allowed origin, replacing whatever upstream sent."""
        response.headers['Access-Control-Allow-Origin'] = self.origin
        return response
