"""REST API for Talon agent.

Endpoints:
  POST   /chat               - Send message, get the full turn result
  POST   /chat/stream        - Send message, stream turn events (SSE)
  DELETE /chat/{session_id}  - End conversation
  GET    /providers          - Configured provider routes
  GET    /health             - Health check
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from talon.agent.fallback import FallbackExecutor
from talon.agent.models import SessionStore
from talon.agent.router import ModelRouter
from talon.agent.runner import AgentRunner
from talon.agent.schemas import TaskComplexity
from talon.config import Settings

logger = logging.getLogger(__name__)


def create_app(
    runner: AgentRunner,
    sessions: SessionStore,
    router: ModelRouter,
    settings: Settings,
    executor: FallbackExecutor | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Starlette app over one runner and one session store."""

    async def _parse_chat(request: Request) -> tuple[dict[str, Any] | None, JSONResponse | None]:
        try:
            body = await request.json()
        except ValueError:
            return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        if not message or not isinstance(message, str):
            return None, JSONResponse({"error": "Missing required field: message"}, status_code=400)

        complexity = body.get("complexity") or TaskComplexity.MODERATE
        try:
            body["complexity"] = TaskComplexity(complexity)
        except ValueError:
            valid = ", ".join(c.value for c in TaskComplexity)
            return None, JSONResponse(
                {"error": f"Invalid complexity {complexity!r} (expected one of: {valid})"},
                status_code=400,
            )
        body["session_id"] = body.get("session_id") or str(uuid4())
        return body, None

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Run one turn and return the collected TurnResult."""
        body, error = await _parse_chat(request)
        if error is not None:
            return error

        session_id = body["session_id"]
        session = sessions.get_or_create(session_id)
        async with sessions.lock(session_id):
            result = await runner.complete_turn(
                session, body["message"], complexity=body["complexity"],
            )

        payload = result.model_dump(mode="json")
        payload["response"] = result.response_text
        return JSONResponse(payload)

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - Run one turn, one SSE frame per StreamEvent."""
        body, error = await _parse_chat(request)
        if error is not None:
            return error

        session_id = body["session_id"]
        session = sessions.get_or_create(session_id)

        async def event_generator():
            async with sessions.lock(session_id):
                try:
                    async for event in runner.run_turn(
                        session, body["message"], complexity=body["complexity"],
                    ):
                        data = {"session_id": session_id, **event.to_dict()}
                        yield f"data: {json.dumps(data)}\n\n"
                except Exception as e:
                    logger.exception("Stream for session %s aborted", session_id)
                    error_data = json.dumps({"type": "error", "text": str(e), "error_kind": "unknown"})
                    yield f"data: {error_data}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - Forget a session and its history."""
        session_id = request.path_params["session_id"]
        if not sessions.drop(session_id):
            return JSONResponse({"error": "Session not found", "session_id": session_id}, status_code=404)
        return JSONResponse({"status": "ended", "session_id": session_id})

    async def providers(request: Request) -> JSONResponse:
        """GET /providers - Configured routes in priority order."""
        items = []
        for route in router.routes():
            cooling = executor.backoff.is_cooling(route.provider_id) if executor is not None else False
            items.append({
                "provider_id": route.provider_id,
                "model": route.model,
                "models": list(route.models),
                "priority": route.priority,
                "quality": route.quality,
                "cooling_down": cooling,
            })
        return JSONResponse({"default_model": settings.model, "providers": items})

    async def health(request: Request) -> JSONResponse:
        """GET /health - 503 while no provider route exists."""
        count = len(router.routes())
        if count == 0:
            return JSONResponse(
                {"status": "unhealthy", "error": "No LLM provider configured", "providers": 0},
                status_code=503,
            )
        return JSONResponse({
            "status": "healthy",
            "agent_id": settings.agent_id,
            "providers": count,
            "sessions": len(sessions),
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/providers", providers),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
