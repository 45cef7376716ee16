from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

ALLOWED_METHODS = "GET, POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization"


def cors_headers(allow_origin: str = "*") -> dict:
    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
    }


class CORSHeadersMiddleware(BaseHTTPMiddleware):
    """
    Stamps the cross-origin header set on every response, whether or not the
    request carried an Origin header. Starlette's CORSMiddleware only answers
    browser-shaped requests.
    """

    def __init__(self, app, allow_origin: str = "*"):
        super().__init__(app)
        self.headers = cors_headers(allow_origin)

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(self.headers)
        return response
