from __future__ import annotations

from collections.abc import Iterable

from starlette.responses import Response

CORS_ALLOW_METHODS = "GET,DELETE,PATCH,POST,PUT,OPTIONS"
CORS_ALLOW_HEADERS = (
    "Authorization, X-CSRF-Token, X-Requested-With, Accept, Accept-Version, "
    "Content-Length, Content-MD5, Content-Type, Date, X-Api-Version, X-Correlation-Id"
)
CORS_MAX_AGE_SECONDS = 86400
WILDCARD_ORIGIN = "*"


class CorsPolicy:
    """CORS headers for API responses, keyed off a static origin allow-list.

    ``Access-Control-Allow-Origin`` always echoes a concrete origin so that
    credentialed requests keep working; a ``*`` entry in the allow-list means
    "echo any origin", never a literal wildcard header.
    """

    def __init__(self, allowed_origins: Iterable[str], *, path_prefix: str = "/api") -> None:
        self.allowed_origins = frozenset(allowed_origins)
        self.path_prefix = path_prefix.rstrip("/")

    def applies_to(self, path: str) -> bool:
        return path == self.path_prefix or path.startswith(f"{self.path_prefix}/")

    def allow_origin_for(self, origin: str | None) -> str | None:
        if not origin:
            return None
        if origin in self.allowed_origins or WILDCARD_ORIGIN in self.allowed_origins:
            return origin
        return None

    def headers_for(self, origin: str | None) -> dict[str, str]:
        headers = {
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
            "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
            "Access-Control-Max-Age": str(CORS_MAX_AGE_SECONDS),
        }
        allowed_origin = self.allow_origin_for(origin)
        if allowed_origin is not None:
            headers["Access-Control-Allow-Origin"] = allowed_origin
        return headers

    def apply(self, response: Response, origin: str | None) -> Response:
        for name, value in self.headers_for(origin).items():
            response.headers[name] = value
        return response

    def preflight(self, origin: str | None) -> Response:
        return self.apply(Response(status_code=200), origin)
