"""Request context middleware: X-Request-Id plus the student a request concerns."""

import re
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_STUDENT_PATH = re.compile(r"/students/(\d+)(?:/|$)")


def student_from_path(path: str) -> int | None:
    """Student id embedded in a ``/students/{id}`` route, if any."""
    match = _STUDENT_PATH.search(path)
    return int(match.group(1)) if match else None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every request and its log lines with an X-Request-Id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        context: dict[str, object] = {"request_id": request_id, "path": request.url.path}
        student_id = student_from_path(request.url.path)
        if student_id is not None:
            context["student_id"] = student_id
        structlog.contextvars.bind_contextvars(**context)

        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
