"""
Request ID middleware.

Reuses a well-formed client ``X-Request-ID`` or generates one, binds it to
the logging context for the request and echoes it on the response.
"""

import logging
import time

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .logging_config import bind_request_id, request_id_var

logger = logging.getLogger("otagate.access")

HEADER_NAME = "X-Request-ID"


class RequestIDMiddleware:
    def __init__(self, app: ASGIApp, header_name: str = HEADER_NAME) -> None:
        self.app = app
        self.header_name = header_name

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        token = bind_request_id(Headers(scope=scope).get(self.header_name))
        request_id = request_id_var.get()
        scope.setdefault("state", {})["request_id"] = request_id
        started = time.monotonic()
        status = {"code": 500}

        async def _send(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
                MutableHeaders(scope=message)[self.header_name] = request_id
            await send(message)

        try:
            await self.app(scope, receive, _send)
        finally:
            # Only the path is logged; query strings carry grants
            logger.info("%s %s -> %d (%.1f ms)", scope.get("method"), scope.get("path"),
                        status["code"], (time.monotonic() - started) * 1000)
            request_id_var.reset(token)
