"""HTTP forwarding boundary for browser clients.

Every request under ``/qdrant/`` or ``/api/qdrant/`` is forwarded to the
upstream vector store with the server-held API key injected. Upstream
failures map to distinct statuses:

    timeout      -> 504 Gateway Timeout
    unreachable  -> 502 Bad Gateway
    anything else-> 500 Proxy request failed
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import ShelfSyncSettings, get_settings

logger = logging.getLogger("shelfsync.proxy")

FORWARDED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CONFIG_HINT = "Set QDRANT_UPSTREAM_URL and QDRANT_UPSTREAM_API_KEY in the proxy environment"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, PATCH, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, api-key",
}


def upstream_url(base: str, path: str, query: str) -> str:
    """Join the upstream base, the stripped sub-path and the raw query string."""
    segments = [segment for segment in path.split("/") if segment]
    url = base.rstrip("/") + "/" + "/".join(segments)
    return f"{url}?{query}" if query else url


def create_proxy_app(
    settings: ShelfSyncSettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the forwarding app.

    An app built without upstream configuration still starts; every
    forwarded request then answers 500 with a remediation hint.
    """
    settings = settings or get_settings()
    base_url = settings.qdrant_upstream_url.rstrip("/")
    timeout = settings.proxy_timeout_seconds
    client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.proxy_configured:
            logger.info("Forwarding to %s", base_url)
        else:
            logger.error("Proxy configuration error: %s", CONFIG_HINT)
        yield
        await client.aclose()

    app = FastAPI(title="ShelfSync vector store proxy", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "configured": settings.proxy_configured}

    async def forward(request: Request, path: str = "") -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)

        if not settings.proxy_configured:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Proxy configuration error",
                    "details": "QDRANT_UPSTREAM_URL and QDRANT_UPSTREAM_API_KEY must be set",
                    "hint": CONFIG_HINT,
                },
                headers=CORS_HEADERS,
            )

        target = upstream_url(base_url, path, request.url.query)
        headers = {
            "Content-Type": request.headers.get("content-type", "application/json"),
            "api-key": settings.qdrant_upstream_api_key,
        }
        for name in ("accept", "accept-language"):
            if name in request.headers:
                headers[name.title()] = request.headers[name]
        body = None
        if request.method not in ("GET", "HEAD"):
            body = await request.body() or None

        logger.debug("%s %s -> %s", request.method, request.url.path, target)
        try:
            upstream = await client.request(
                request.method, target, headers=headers, content=body
            )
        except httpx.TimeoutException:
            logger.error("Upstream timeout: %s %s", request.method, target)
            return JSONResponse(
                status_code=504,
                content={
                    "error": "Gateway Timeout",
                    "details": f"Request to Qdrant API timed out after {timeout:g} seconds",
                    "upstreamUrl": base_url,
                },
                headers=CORS_HEADERS,
            )
        except httpx.ConnectError as e:
            logger.error("Upstream unreachable: %s", e)
            return JSONResponse(
                status_code=502,
                content={
                    "error": "Bad Gateway",
                    "details": f"Cannot connect to Qdrant API at {base_url}",
                    "hint": "Check QDRANT_UPSTREAM_URL environment variable",
                },
                headers=CORS_HEADERS,
            )
        except httpx.HTTPError as e:
            logger.error("Proxy request failed: %s", e)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Proxy request failed",
                    "details": str(e),
                    "upstreamUrl": base_url,
                },
                headers=CORS_HEADERS,
            )

        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "application/json"),
            headers=CORS_HEADERS,
        )

    for prefix in ("/api/qdrant", "/qdrant"):
        app.add_api_route(f"{prefix}/{{path:path}}", forward, methods=FORWARDED_METHODS)
        app.add_api_route(prefix, forward, methods=FORWARDED_METHODS, include_in_schema=False)

    return app
