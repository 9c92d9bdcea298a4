import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .identity import parse_roles

logger = logging.getLogger("dispatch_service.requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        line = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "user_sub": request.headers.get("X-User-Sub"),
            "user_roles": parse_roles(request.headers.get("X-User-Roles")),
        }

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            line.update(status=500, duration_ms=round((time.perf_counter() - start) * 1000, 2))
            logger.error(json.dumps(line))
            raise

        line.update(status=response.status_code, duration_ms=round((time.perf_counter() - start) * 1000, 2))
        response.headers["X-Request-Id"] = request_id
        logger.info(json.dumps(line))
        return response
