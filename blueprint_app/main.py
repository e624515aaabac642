"""
Aqua BluePrint report service entry point.

FastAPI application that consolidates the formulas backend's stage results
into one report and serves it as JSON, a paginated layout, PDF and Excel.
"""
import json
import os
import re
import logging
from datetime import datetime
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from api.routes import api_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("aqua-blueprint")

# ---------------------------------------------------------------------------
# Snake_case → camelCase API response middleware
# ---------------------------------------------------------------------------

_SNAKE_RE = re.compile(r"_([a-z])")


def _to_camel(snake: str) -> str:
    """Convert snake_case string to camelCase."""
    return _SNAKE_RE.sub(lambda m: m.group(1).upper(), snake)


# Stage 3/4 results are keyed by the backend's own field names; below the
# top level of these objects keys are passed through unchanged.
_RAW_FIELD_STAGES = {"stage3", "stage4"}


def _convert_top_level(obj):
    if isinstance(obj, dict):
        return {_to_camel(k): v for k, v in obj.items()}
    return obj


def _convert_keys(obj):
    """Recursively convert dict keys from snake_case to camelCase
    and serialize datetime objects to ISO 8601 strings."""
    if isinstance(obj, dict):
        return {
            _to_camel(k): _convert_top_level(v) if k in _RAW_FIELD_STAGES else _convert_keys(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_convert_keys(item) for item in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    return obj


class CamelCaseMiddleware(BaseHTTPMiddleware):
    """Middleware that converts JSON API responses from snake_case to camelCase."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Only transform JSON responses from /api/ routes
        if not request.url.path.startswith("/api/"):
            return response

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            return response

        # Read the response body
        body_chunks = []
        async for chunk in response.body_iterator:
            if isinstance(chunk, bytes):
                body_chunks.append(chunk)
            else:
                body_chunks.append(chunk.encode("utf-8"))
        body = b"".join(body_chunks)

        try:
            data = json.loads(body)
            converted = _convert_keys(data)
            new_body = json.dumps(converted, default=str)
            headers = dict(response.headers)
            headers.pop("content-length", None)  # Will be recalculated
            return Response(
                content=new_body,
                status_code=response.status_code,
                headers=headers,
                media_type="application/json",
            )
        except (json.JSONDecodeError, TypeError):
            # Not valid JSON or conversion failed; return original
            return Response(
                content=body,
                status_code=response.status_code,
                headers=dict(response.headers),
                media_type=content_type,
            )


app = FastAPI(
    title="Aqua BluePrint Reports",
    description="Report consolidation and pagination for aquaculture system designs",
    version="1.0.0",
)

app.add_middleware(CamelCaseMiddleware)
app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "status": "running",
        "message": "Aqua BluePrint report API is running.",
        "docs": "/docs",
    }


@app.on_event("startup")
async def startup_event():
    logger.info("Aqua BluePrint report service starting up...")
    logger.info("Formulas backend: %s", os.environ.get("AQUA_API_BASE", "http://localhost:8000/backend"))
    logger.info("Report page size: %s", os.environ.get("REPORT_PAGE_SIZE", "letter"))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
