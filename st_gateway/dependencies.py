from __future__ import annotations

import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from st_gateway.chat.adapter import RequestContext
from st_gateway.chat.errors import ChatGenerationError
from st_gateway.core.intent import decode_hint

LAST_INPUT_HEADER = "x-st-last-input"
USER_HEADER = "x-st-user"


def new_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


def get_request_context(request: Request) -> RequestContext:
    state = request.app.state
    user_id = (request.headers.get(USER_HEADER) or "").strip() or None

    return RequestContext(
        settings=state.settings,
        store=state.store,
        client_factory=state.http_client_factory,
        sleep=state.sleep,
        request_id=new_request_id(),
        user_id=user_id,
        locale=request.headers.get("accept-language", ""),
        hint=decode_hint(request.headers.get(LAST_INPUT_HEADER)),
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatGenerationError)
    async def handle_generation_error(
        _request: Request,
        exc: ChatGenerationError,
    ) -> JSONResponse:
        headers = {"x-st-request-id": exc.request_id} if exc.request_id else None
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_error(),
            headers=headers,
        )

