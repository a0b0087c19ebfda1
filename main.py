"""HTTP surface: health check and the tool endpoints.

Run with:
    uvicorn main:app --host 0.0.0.0 --port 8000
"""

import logging
from typing import Any, Dict

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import BaseModel

import db
from app.context import build_context
from app.services.tools import ToolDeps, execute_tool, is_valid_tool
from app.types.contracts import ToolContext
from config import configure_logging, settings

logger = logging.getLogger("main")

app = FastAPI()


class ToolRequest(BaseModel):
    context: ToolContext
    arguments: Dict[str, Any] = {}


# Wire queue + transport on startup; dispose the DB engine on shutdown

@app.on_event("startup")
async def startup_event():
    configure_logging()
    if getattr(app.state, "context", None) is None:
        app.state.context = build_context(settings)
    logger.info("Tool API ready")
    # Tables are managed via Alembic migrations


@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


# --------------------------------------------
# Endpoints
# --------------------------------------------
@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/tools/{name}")
async def call_tool(name: str, request: Request, body: ToolRequest = Body(...)) -> Dict[str, Any]:
    if not is_valid_tool(name):
        raise HTTPException(404, f"Unknown tool: {name}")
    ctx = request.app.state.context
    result = await execute_tool(name, body.arguments, body.context, ToolDeps(queue=ctx.queue))
    return result.envelope()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
