class ProxyError(Exception):
    """Base error carrying the status and message shown to the caller."""

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, detail: str = None):
        super().__init__(detail or self.message)
        self.detail = detail


class MissingTarget(ProxyError):
    status_code = 400
    message = "Target URL not provided"


class InvalidTarget(ProxyError):
    status_code = 400
    message = "Invalid URL format"


class UpstreamUnreachable(ProxyError):
    """Transport-level failure talking to the target (DNS, connect, reset, bad response)."""

    status_code = 500
    message = "Error fetching the requested URL"


class HeaderRejected(ProxyError):
    """A single header that cannot be re-emitted. Dropped, never sent to the caller."""

    status_code = 502
    message = "Bad Gateway"


class BadRequest(ProxyError):
    status_code = 400
    message = "Bad Request"


class NotFound(ProxyError):
    status_code = 404
    message = "Not Found"


class PayloadTooLarge(ProxyError):
    status_code = 413
    message = "Payload Too Large"


class HeadersTooLarge(ProxyError):
    status_code = 431
    message = "Request Header Fields Too Large"
