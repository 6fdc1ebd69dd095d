from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(prefix="/api/backends/chat-completions", tags=["chat-completions"])


@router.post("/status")
async def status() -> dict[str, object]:
    return {"ok": True, "provider": "gateway", "online": True}
