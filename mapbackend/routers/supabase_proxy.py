from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/api", tags=["supabase-proxy"])


@router.post("/supabase")
async def http_proxy_post(request: Request):
    result, decision = await request.app.state.proxy.handle_post(request)
    return JSONResponse(result, headers=decision.headers())


@router.get("/supabase")
async def http_proxy_get(
    request: Request,
    table: str | None = Query(default=None),
    select: str | None = Query(default=None),
):
    result, decision = await request.app.state.proxy.handle_get(request, table, select)
    return JSONResponse(result, headers=decision.headers())
