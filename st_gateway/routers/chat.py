from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from st_gateway.chat.adapter import (
    RequestContext,
    create_chat_completion,
    create_chat_completion_stream,
)
from st_gateway.chat.errors import map_generation_error
from st_gateway.chat.schemas import UnifiedChatRequest
from st_gateway.core.errors import GatewayError
from st_gateway.dependencies import get_request_context

router = APIRouter(prefix="/api/backends/chat-completions", tags=["chat-completions"])


@router.post("/generate")
async def generate(request: Request, context: RequestContext = Depends(get_request_context)):
    payload = await _parse_payload(request, context)

    if payload.stream:
        iterator, headers = await create_chat_completion_stream(payload, context)
        headers["Cache-Control"] = "no-cache"

        return StreamingResponse(
            iterator,
            media_type="text/event-stream",
            headers=headers,
        )

    response_payload, headers = await create_chat_completion(payload, context)
    return JSONResponse(content=response_payload, headers=headers)


async def _parse_payload(request: Request, context: RequestContext) -> UnifiedChatRequest:
    try:
        body = await request.json()
    except ValueError:
        body = None

    if not isinstance(body, dict):
        error = GatewayError(
            status_code=400,
            message="Request body must be a JSON object.",
        )
        raise map_generation_error(error, context.request_id)

    try:
        return UnifiedChatRequest.model_validate(body)
    except ValidationError as exc:
        first_error = exc.errors()[0]["msg"] if exc.errors() else "Invalid request"
        error = GatewayError(status_code=400, message=first_error, code="invalid_request")
        raise map_generation_error(error, context.request_id) from exc
