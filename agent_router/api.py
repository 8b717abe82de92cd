"""HTTP surface for the supervisor.

Run from project root: uvicorn agent_router.api:app --reload
(or uvicorn agent_router.api:create_app --factory)
"""

import json

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from agent_router.config import Settings
from agent_router.errors import AgentNotFoundError, RoutingValidationError
from agent_router.log import setup_logging
from agent_router.router import AgentRouter

api = APIRouter(prefix="/api")


def get_router(request: Request) -> AgentRouter:
    return request.app.state.agent_router


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RoutingValidationError("Invalid JSON in request body") from e
    if not isinstance(body, dict):
        raise RoutingValidationError("Request body must be a JSON object")
    return body


@api.post("/supervisor/route", tags=["supervisor"], summary="Route a query to one agent")
async def post_route(request: Request) -> dict:
    body = await _read_json(request)
    result = await get_router(request).route(
        body.get("query"), body.get("session_id"), body.get("conversation_context")
    )
    return result.to_dict()


@api.post(
    "/supervisor/route/stream",
    tags=["supervisor"],
    summary="Route a query, streaming the trace as NDJSON",
    description="Events: SESSION_START, AGENT_ROUTING, optional SAFETY_SWITCH / ERROR, SESSION_END.",
)
async def post_route_stream(request: Request) -> StreamingResponse:
    body = await _read_json(request)
    lines = get_router(request).route_stream(
        body.get("query"), body.get("session_id"), body.get("conversation_context")
    )
    return StreamingResponse(
        lines,
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@api.get("/supervisor/agents", tags=["supervisor"], summary="List registered agents")
async def get_agents(request: Request) -> dict:
    return {"agents": [a.to_dict() for a in get_router(request).list_agents()]}


@api.post("/agents/handoff", tags=["supervisor"], summary="Record a handoff between agents")
async def post_handoff(request: Request) -> dict:
    body = await _read_json(request)
    events = get_router(request).record_handoff(
        body.get("session_id"),
        str(body.get("from_agent", "")),
        str(body.get("to_agent", "")),
        str(body.get("reason", "")),
    )
    return {"events": [e.to_dict() for e in events]}


@api.get("/safety/{session_id}", tags=["safety"])
async def get_safety(session_id: str, request: Request) -> dict:
    return get_router(request).get_safety_status(session_id).to_dict()


@api.post("/safety/{session_id}/recover", tags=["safety"], summary="Manual recovery")
async def post_recover(session_id: str, request: Request) -> dict:
    result = await get_router(request).attempt_recovery(session_id)
    return result.to_dict()


@api.delete("/safety/{session_id}", tags=["safety"], summary="End a session")
async def delete_session(session_id: str, request: Request) -> dict:
    get_router(request).end_session(session_id)
    return {"cleared": True}


@api.get("/cost/{session_id}", tags=["cost"])
async def get_session_cost(session_id: str, request: Request) -> dict:
    return await get_router(request).session_costs(session_id)


@api.get("/cost/{session_id}/history", tags=["cost"])
async def get_session_history(session_id: str, request: Request, limit: int = 50) -> dict:
    return {"history": await get_router(request).routing_history(session_id, limit)}


def create_app(agent_router: AgentRouter | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI app. Tests pass a preconfigured ``AgentRouter``."""
    if agent_router is None:
        settings = settings or Settings.from_env()
        setup_logging(settings.log_level, log_file=settings.log_file)
        agent_router = AgentRouter.from_settings(settings)

    app = FastAPI(title="Agent Router")
    app.state.agent_router = agent_router
    app.include_router(api)

    @app.exception_handler(RoutingValidationError)
    async def _validation_error(request: Request, exc: RoutingValidationError) -> JSONResponse:
        logger.info(f"Rejected {request.url.path}: {exc.message}")
        return JSONResponse(status_code=400, content={"error": exc.message})

    @app.exception_handler(AgentNotFoundError)
    async def _not_found(request: Request, exc: AgentNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": exc.message})

    return app


_app: FastAPI | None = None


def __getattr__(name: str):
    # Lazy so importing this module (e.g. in tests) doesn't read the environment.
    # Built once: every access must see the same router and session state.
    global _app
    if name == "app":
        if _app is None:
            _app = create_app()
        return _app
    raise AttributeError(name)
