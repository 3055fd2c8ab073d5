from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds conservative security headers for a JSON API.

    HSTS is only sent when ``hsts`` is enabled (outside dev, behind TLS).
    """

    def __init__(self, app: ASGIApp, hsts: bool = False, hsts_max_age: int = 31536000) -> None:
        super().__init__(app)
        self.hsts = hsts
        self.hsts_max_age = hsts_max_age

    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault(
            "Permissions-Policy",
            "accelerometer=(), camera=(), geolocation=(), gyroscope=(), magnetometer=(), microphone=(), payment=(), usb=()",
        )
        if self.hsts:
            response.headers.setdefault("Strict-Transport-Security", f"max-age={self.hsts_max_age}; includeSubDomains")
        # OTP responses must never be cached
        if request.method.upper() in ("POST", "PUT", "PATCH", "DELETE") or request.url.path.startswith("/api/auth"):
            response.headers.setdefault("Cache-Control", "no-store")
        else:
            response.headers.setdefault("Cache-Control", "no-cache, max-age=0")
        return response
