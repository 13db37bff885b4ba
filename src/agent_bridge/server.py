"""Starlette application assembly and lifecycle."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from agent_bridge import __version__
from agent_bridge.adapter import BridgeAdapter
from agent_bridge.config import BridgeConfig
from agent_bridge.errors import InvalidPromptError, SessionBusyError, SessionNotFoundError
from agent_bridge.events.broadcaster import Listener, Subscription


class CreateSessionBody(BaseModel):
    title: str | None = None
    directory: str | None = None


class PromptPart(BaseModel):
    type: str
    text: str | None = None


class PromptBody(BaseModel):
    parts: list[PromptPart] = Field(default_factory=list)

    def text(self) -> str:
        """Text parts joined by newlines. Other part types are ignored."""
        return "\n".join(p.text for p in self.parts if p.type == "text" and p.text)


class ReplyBody(BaseModel):
    answers: list[list[str]] = Field(
        default_factory=list,
        description="Selected option labels per question, in question order",
    )


def format_sse(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


async def sse_stream(
    subscription: Subscription,
    keepalive: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[bytes]:
    """Frames for one event-stream client until it disconnects or is evicted."""
    yield format_sse({"type": "server.connected", "properties": {}})
    while True:
        event = await subscription.get(timeout=keepalive)
        if event is not None:
            yield format_sse(event.to_wire())
            continue
        if subscription.closed or await is_disconnected():
            return
        yield b": keepalive\n\n"


def create_app(
    config: BridgeConfig,
    adapter: BridgeAdapter | None = None,
    on_event: Listener | None = None,
) -> Starlette:
    """Create and configure the Starlette bridge application."""

    bridge = adapter if adapter is not None else BridgeAdapter(config)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
        await bridge.start()
        if on_event is not None:
            bridge.broadcaster.attach(on_event)
        yield
        await bridge.stop()

    async def read_json(request: Request) -> Any:
        body = await request.body()
        if not body:
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise InvalidPromptError(f"Invalid JSON body: {exc.msg}") from exc

    async def health(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse({"status": "ok", "version": __version__})

    async def create_session(request: Request) -> JSONResponse:
        try:
            body = CreateSessionBody.model_validate(await read_json(request))
        except ValidationError as exc:
            return JSONResponse({"error": exc.errors(include_url=False)}, status_code=400)
        session = await bridge.create_session(title=body.title, directory=body.directory)
        return JSONResponse(session.to_info(), status_code=201)

    async def list_sessions(request: Request) -> JSONResponse:
        return JSONResponse([s.to_info() for s in bridge.list_sessions()])

    async def session_status(request: Request) -> JSONResponse:
        return JSONResponse(bridge.status())

    async def get_session(request: Request) -> JSONResponse:
        session = bridge.get_session(request.path_params["session_id"])
        return JSONResponse(session.to_info())

    async def delete_session(request: Request) -> Response:
        session_id = request.path_params["session_id"]
        if not await bridge.delete_session(session_id):
            raise SessionNotFoundError(session_id)
        return Response(status_code=204)

    async def list_messages(request: Request) -> JSONResponse:
        messages = bridge.list_messages(request.path_params["session_id"])
        return JSONResponse([m.to_info() for m in messages])

    async def prompt_async(request: Request) -> JSONResponse:
        """Accept a prompt and return as soon as the user message is stored."""
        try:
            body = PromptBody.model_validate(await read_json(request))
        except ValidationError as exc:
            raise InvalidPromptError("Message must contain a text part") from exc
        message = await bridge.submit_prompt(request.path_params["session_id"], body.text())
        return JSONResponse({"id": message.id, "sessionID": message.session_id})

    async def list_questions(request: Request) -> JSONResponse:
        session_id = request.query_params.get("sessionID")
        return JSONResponse([q.to_info() for q in bridge.list_questions(session_id)])

    async def reply_question(request: Request) -> JSONResponse:
        try:
            body = ReplyBody.model_validate(await read_json(request))
        except ValidationError as exc:
            return JSONResponse({"error": exc.errors(include_url=False)}, status_code=400)
        if not bridge.reply(request.path_params["request_id"], body.answers):
            return JSONResponse({"error": "Question not found"}, status_code=404)
        return JSONResponse(True)

    async def reject_question(request: Request) -> JSONResponse:
        if not bridge.reject(request.path_params["request_id"]):
            return JSONResponse({"error": "Question not found"}, status_code=404)
        return JSONResponse(True)

    async def events(request: Request) -> StreamingResponse:
        subscription = bridge.broadcaster.subscribe()

        async def body() -> AsyncIterator[bytes]:
            try:
                async for frame in sse_stream(
                    subscription, config.sse_keepalive_seconds, request.is_disconnected
                ):
                    yield frame
            finally:
                bridge.broadcaster.unsubscribe(subscription)

        return StreamingResponse(
            body(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    async def busy(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=409)

    async def bad_request(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=400)

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/session", list_sessions, methods=["GET"]),
        Route("/session", create_session, methods=["POST"]),
        # Must precede /session/{session_id}
        Route("/session/status", session_status, methods=["GET"]),
        Route("/session/{session_id}", get_session, methods=["GET"]),
        Route("/session/{session_id}", delete_session, methods=["DELETE"]),
        Route("/session/{session_id}/message", list_messages, methods=["GET"]),
        Route("/session/{session_id}/prompt_async", prompt_async, methods=["POST"]),
        Route("/question", list_questions, methods=["GET"]),
        Route("/question/{request_id}/reply", reply_question, methods=["POST"]),
        Route("/question/{request_id}/reject", reject_question, methods=["POST"]),
        Route("/event", events, methods=["GET"]),
        Route("/global/event", events, methods=["GET"]),
    ]

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            SessionNotFoundError: not_found,
            SessionBusyError: busy,
            InvalidPromptError: bad_request,
        },
    )
    app.state.adapter = bridge

    return app
