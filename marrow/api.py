"""
HTTP front-end.

Thin request validation over MarrowClient. Every error body is
``{"error": ...}`` carrying a message or the validation issues, never a
traceback.
"""

import json
import logging
import re
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .client import MarrowClient
from .config import ApiConfig, MarrowConfig
from .exceptions import InvalidUrl, MapNotFound, MarrowError

logger = logging.getLogger(__name__)

_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."


def ascii_json(payload) -> str:
    """Serialize to JSON and drop every character outside printable ASCII."""
    return _NON_PRINTABLE.sub("", json.dumps(payload, ensure_ascii=False))


def _ascii_response(payload) -> Response:
    return Response(content=ascii_json(payload), media_type="application/json")


class FixedWindowRateLimiter:
    """
    Per-client request budget over fixed windows.

    A client's window starts with its first request; the count resets once
    ``window`` seconds have passed.
    """

    def __init__(self, limit: int, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str) -> Tuple[bool, int]:
        """Record one request. Returns (allowed, remaining)."""
        now = self._clock()
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window:
            started, count = now, 0

        if count >= self.limit:
            self._windows[key] = (started, count)
            return False, 0

        count += 1
        self._windows[key] = (started, count)
        return True, self.limit - count


class RetryOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int = Field(1, alias="maxAttempts", ge=1)
    use_map_selectors: bool = Field(False, alias="useMapSelectors")


class ValidateRequest(BaseModel):
    url: str = Field(..., min_length=1)
    selectors: List[str] = Field(..., min_length=1)


class ExtractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., min_length=1)
    selectors: Optional[List[str]] = None
    element_names: Optional[List[str]] = Field(None, alias="elementNames")
    debug: bool = False
    retry: Optional[RetryOptions] = None


def _error(status: int, error) -> JSONResponse:
    return JSONResponse({"error": error}, status_code=status)


def create_app(config: Optional[MarrowConfig] = None, client: Optional[MarrowClient] = None) -> FastAPI:
    config = config or MarrowConfig()
    api: ApiConfig = config.api
    client = client or MarrowClient(config)
    limiter = FixedWindowRateLimiter(api.rate_limit)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[API] Serving registry {config.registry.path}")
        yield
        await client.drain()

    app = FastAPI(title="Marrow HTTP API", version=__version__, lifespan=lifespan)
    app.state.client = client
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in api.allowed_origins else api.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        key = request.client.host if request.client else "unknown"
        allowed, remaining = limiter.hit(key)
        if not allowed:
            logger.warning(f"[API] Rate limit exceeded for {key}")
            response = _error(429, RATE_LIMIT_MESSAGE)
        else:
            logger.debug(f"[API] {request.method} {request.url.path}")
            response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limiter.limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        issues = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
        return _error(400, issues)

    @app.exception_handler(InvalidUrl)
    async def on_invalid_url(request: Request, exc: InvalidUrl):
        return _error(400, str(exc))

    @app.exception_handler(MapNotFound)
    async def on_map_not_found(request: Request, exc: MapNotFound):
        return _error(404, str(exc))

    @app.exception_handler(MarrowError)
    async def on_marrow_error(request: Request, exc: MarrowError):
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc}")
        return _error(500, str(exc))

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(f"[API] Unhandled error on {request.url.path}")
        return _error(500, "Internal server error")

    @app.get("/")
    async def info():
        return {
            "name": "Marrow HTTP API",
            "version": __version__,
            "endpoints": {
                "GET /health": "Health check",
                "GET /v1/map": "Get cached page map from registry",
                "GET /v1/manifest": "Get domain manifest from registry",
                "GET /v1/stats": "Get registry statistics",
                "POST /v1/validate": "Test if selectors work on a page",
                "POST /v1/extract": "Extract content using selectors or element names",
            },
        }

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": int(time.time() * 1000)}

    @app.get("/v1/map")
    async def get_map(url: str = Query(..., min_length=1), debug: bool = False):
        result = await client.lookup_map_detailed(url)
        if result.map is None:
            return _error(404, "Map not found")
        payload = result.model_dump(mode="json") if debug else result.map.model_dump(mode="json")
        return _ascii_response(payload)

    @app.get("/v1/manifest")
    async def get_manifest(domain: str = Query(..., min_length=1)):
        manifest = await client.get_manifest(domain)
        return manifest.model_dump(mode="json")

    @app.get("/v1/stats")
    async def get_stats():
        stats = await client.get_stats()
        return stats.model_dump(mode="json")

    @app.post("/v1/validate")
    async def validate(body: ValidateRequest):
        report = await client.validate_selectors(body.url, body.selectors)
        return report.model_dump(mode="json")

    @app.post("/v1/extract")
    async def extract(body: ExtractRequest):
        if not body.selectors and not body.element_names:
            return _error(400, "Provide selectors or elementNames.")

        retry = body.retry or RetryOptions()
        try:
            if body.element_names:
                result = await client.extract_elements(
                    body.url,
                    body.element_names,
                    max_attempts=retry.max_attempts,
                    debug=body.debug,
                    map_on_miss=False,
                )
            else:
                result = await client.extract_with_retry(
                    body.url,
                    body.selectors,
                    max_attempts=retry.max_attempts,
                    use_map_selectors=retry.use_map_selectors,
                    debug=body.debug,
                )
        except InvalidUrl:
            raise
        except ValueError as e:
            return _error(400, str(e))

        payload = result.model_dump(mode="json") if body.debug else {"data": result.data}
        return _ascii_response(payload)

    return app
