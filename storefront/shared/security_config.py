import hashlib
import hmac
import html
import re
from typing import List, Optional

from fastapi import FastAPI, Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

# --- Rate Limiting ---
LOGIN_RATE = "5/minute"
REGISTER_RATE = "10/minute"
CHECKOUT_RATE = "10/minute"
COUPON_RATE = "30/minute"
CATALOG_RATE = "60/minute"


def client_address(request: Request) -> str:
    """First hop of ``X-Forwarded-For`` when behind the load balancer, else the peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(key_func=client_address)


def setup_rate_limiting(app: FastAPI, enabled: bool = True):
    limiter.enabled = enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# --- Security Headers Middleware ---
# Responses on these prefixes carry tokens or payment data
NO_STORE_PREFIXES = ("/api/auth", "/api/orders", "/api/returns")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        # JSON only; the interactive docs are the one page that needs scripts
        if not request.url.path.startswith(("/docs", "/redoc")):
            response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        return response


# --- Input Sanitization ---
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_input(text: Optional[str]) -> Optional[str]:
    """
    Clean free text typed by customers and admins (names, notes, reasons):
    control characters dropped, whitespace trimmed, HTML escaped so it can be
    dropped into email templates as is.
    """
    if not isinstance(text, str):
        return text
    return html.escape(CONTROL_CHARS.sub("", text).strip())


PASSWORD_RULES = (
    (r".{8,}", "at least 8 characters"),
    (r"[A-Z]", "an uppercase letter"),
    (r"[a-z]", "a lowercase letter"),
    (r"\d", "a number"),
)


def password_problems(password: str) -> List[str]:
    """Rules from ``PASSWORD_RULES`` that ``password`` does not meet."""
    return [rule for pattern, rule in PASSWORD_RULES if not re.search(pattern, password)]


# --- Signatures ---
def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def signature_matches(payload: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(payload, secret), signature)


def token_matches(given: Optional[str], expected: str) -> bool:
    """Constant-time check of a shared webhook token; an unset token matches nothing."""
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode(), expected.encode())
