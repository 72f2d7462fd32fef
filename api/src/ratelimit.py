"""
Per-client rate limiting for the public routes.

Rules are matched by path prefix and applied in order, so a weather request
counts against both the general /v1/ window and the /v1/weather/ window.
Counters live in process memory, one fixed window per rule and client IP.
"""

import time
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import ORJSONResponse
from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp


@dataclass(frozen=True)
class RateRule:
    prefix: str
    limit: RateLimitItem
    message: str


def build_rules(api_limit: str, weather_limit: str) -> list[RateRule]:
    """Raises ValueError for limit strings `limits` cannot parse."""
    return [
        RateRule("/v1/", parse(api_limit), "Too many requests from this IP, please try again later."),
        RateRule("/v1/weather/", parse(weather_limit), "Too many weather requests, please slow down."),
    ]


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, rules: list[RateRule]):
        super().__init__(app)
        self.rules = rules
        self.limiter = FixedWindowRateLimiter(MemoryStorage())

    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else "unknown"
        applied = None
        for rule in self.rules:
            if not request.url.path.startswith(rule.prefix):
                continue
            if not self.limiter.hit(rule.limit, rule.prefix, client_ip):
                print(f"[ratelimit] {client_ip} over {rule.limit} on {rule.prefix}")
                return self._reject(rule, client_ip)
            applied = rule

        response = await call_next(request)
        if applied is not None:
            response.headers.update(self._headers(applied, client_ip))
        return response

    def _headers(self, rule: RateRule, client_ip: str) -> dict[str, str]:
        stats = self.limiter.get_window_stats(rule.limit, rule.prefix, client_ip)
        reset_in = max(0, int(stats.reset_time - time.time()))
        return {
            "RateLimit-Limit": str(rule.limit.amount),
            "RateLimit-Remaining": str(max(0, stats.remaining)),
            "RateLimit-Reset": str(reset_in),
        }

    def _reject(self, rule: RateRule, client_ip: str) -> ORJSONResponse:
        headers = self._headers(rule, client_ip)
        headers["Retry-After"] = headers["RateLimit-Reset"]
        return ORJSONResponse(
            {"success": False, "data": None, "error": rule.message, "meta": {}},
            status_code=429,
            headers=headers,
        )
