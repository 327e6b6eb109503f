"""
FastAPI Application — REST API + WebSocket + Webhooks.

Provides:
- WhatsApp webhook verification and inbound message processing
- Chatbot and WhatsApp Flow management (list, save, export, import)
- Context inspection and operator actions (stop, skip, force-complete, cleanup)
- Test sessions over REST, with a WebSocket stream of execution events
- Background sweeper for abandoned contexts
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from channels.whatsapp_adapter import verify_webhook
from config.settings import Settings, get_settings
from core.errors import ConflictError, ContextNotFoundError
from core.observer import TestSessionRecorder
from core.orchestrator import FlowOrchestrator, build_orchestrator
from database.session import close_db, init_db
from flows.transfer import (
    ImportValidationError, export_chatbot_from_store, export_whatsapp_flow,
    import_chatbot, import_whatsapp_flow, validate_chatbot_import,
)
from flows.registry import ChatbotNotFoundError
from job_queue.sweeper import ContextSweeper
from models.schemas import (
    Chatbot, ChatbotStatus, ContextStatus, Edge, ExecutionResult, Node, TestEvent, TestMetadata,
)

logger = structlog.get_logger()

router = APIRouter()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ChatbotSaveRequest(BaseModel):
    id: Optional[str] = None
    name: str
    description: str = ""
    nodes: list[Node] = []
    edges: list[Edge] = []
    is_active: bool = False
    metadata: dict[str, Any] = {}


class ChatbotImportRequest(BaseModel):
    document: dict[str, Any]
    name: Optional[str] = None
    set_active: bool = False
    import_flows: bool = True


class FlowImportRequest(BaseModel):
    document: dict[str, Any]
    name: Optional[str] = None
    create_in_meta: bool = False


class TestSessionRequest(BaseModel):
    chatbot_id: Optional[str] = None
    metadata: TestMetadata = TestMetadata()


class TestMessageRequest(BaseModel):
    text: str = ""
    button_id: Optional[str] = None
    list_row_id: Optional[str] = None
    flow_response: Optional[dict[str, Any]] = None


def _result_body(result: ExecutionResult) -> dict[str, Any]:
    context = result.context
    return {
        "context_id": context.id if context else None,
        "conversation_id": context.conversation_id if context else None,
        "status": context.status.value if context else None,
        "current_node_id": context.current_node_id if context else None,
        "completion_reason": context.completion_reason if context else None,
        "variables": context.variables if context else {},
        "outbound": [m.model_dump(mode="json") for m in result.outbound],
        "receipts": [r.model_dump(mode="json") for r in result.receipts],
        "created": result.created,
        "duplicate": result.duplicate,
        "error": result.error,
    }


def get_orchestrator(request: Request) -> FlowOrchestrator:
    return request.app.state.orchestrator


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    orchestrator = get_orchestrator(request)
    return {
        "status": "healthy",
        "service": request.app.state.settings.app_name,
        "sender": await orchestrator.dispatcher.sender.health_check(),
        "contexts": await orchestrator.stats(),
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: WhatsApp
# ══════════════════════════════════════════════════════════════

@router.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    params = dict(request.query_params)
    challenge = verify_webhook(params, request.app.state.settings.whatsapp.verify_token)
    if challenge is None:
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)


@router.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    payload = await request.json()
    results = await get_orchestrator(request).handle_webhook(payload)
    return {
        "status": "ok",
        "processed": sum(1 for r in results if r.context is not None and not r.duplicate),
        "duplicates": sum(1 for r in results if r.duplicate),
        "refused": sum(1 for r in results if r.error),
    }


# ══════════════════════════════════════════════════════════════
#  CHATBOTS & WHATSAPP FLOWS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/chatbots")
async def list_chatbots(request: Request):
    chatbots = await get_orchestrator(request).store.list_chatbots()
    return [
        {"id": c.id, "name": c.name, "is_active": c.is_active, "status": c.status.value,
         "version": c.version, "nodes": len(c.nodes), "updated_at": c.updated_at}
        for c in chatbots
    ]


@router.post("/api/v1/chatbots")
async def save_chatbot(req: ChatbotSaveRequest, request: Request):
    orchestrator = get_orchestrator(request)
    chatbot = Chatbot(
        name=req.name, description=req.description,
        nodes=req.nodes, edges=req.edges,
        is_active=req.is_active, metadata=req.metadata,
        status=ChatbotStatus.ACTIVE if req.is_active else ChatbotStatus.DRAFT,
    )
    if req.id:
        chatbot.id = req.id
    existing = await orchestrator.store.get_chatbot(chatbot.id)
    if existing is not None:
        chatbot.version = existing.version
        chatbot.created_at = existing.created_at
    saved = await orchestrator.store.save_chatbot(chatbot)
    orchestrator.registry.invalidate(saved.id)
    return {"id": saved.id, "version": saved.version,
            "warnings": orchestrator.registry.graph_for(saved).warnings()}


@router.get("/api/v1/chatbots/{chatbot_id}")
async def get_chatbot(chatbot_id: str, request: Request):
    chatbot = await get_orchestrator(request).store.get_chatbot(chatbot_id)
    if chatbot is None:
        raise HTTPException(404, f"Chatbot {chatbot_id} not found")
    return chatbot.model_dump(mode="json", by_alias=True)


@router.get("/api/v1/chatbots/{chatbot_id}/export")
async def export_chatbot(
    chatbot_id: str, request: Request,
    include_flows: bool = True, include_metadata: bool = True,
):
    document = await export_chatbot_from_store(
        get_orchestrator(request).store, chatbot_id,
        include_flows=include_flows, include_metadata=include_metadata,
    )
    if document is None:
        raise HTTPException(404, f"Chatbot {chatbot_id} not found")
    return document


@router.post("/api/v1/chatbots/import/validate")
async def validate_chatbot(document: dict[str, Any]):
    return validate_chatbot_import(document)


@router.post("/api/v1/chatbots/import")
async def import_chatbot_route(req: ChatbotImportRequest, request: Request):
    orchestrator = get_orchestrator(request)
    result = await import_chatbot(
        orchestrator.store, req.document, name=req.name,
        set_active=req.set_active, import_flows=req.import_flows,
    )
    orchestrator.registry.invalidate(result.chatbot_id)
    return result


@router.post("/api/v1/flows/import")
async def import_flow_route(req: FlowImportRequest, request: Request):
    orchestrator = get_orchestrator(request)
    flow = await import_whatsapp_flow(
        orchestrator.store, req.document, name=req.name,
        create_in_meta=req.create_in_meta, client=orchestrator.dispatcher.sender,
    )
    return {"id": flow.id, "name": flow.name, "whatsapp_flow_id": flow.whatsapp_flow_id,
            "status": flow.status}


@router.get("/api/v1/flows/{flow_id}/export")
async def export_flow_route(flow_id: str, request: Request, include_metadata: bool = True):
    flow = await get_orchestrator(request).store.get_whatsapp_flow(flow_id)
    if flow is None:
        raise HTTPException(404, f"WhatsApp Flow {flow_id} not found")
    return export_whatsapp_flow(flow, include_metadata=include_metadata)


# ══════════════════════════════════════════════════════════════
#  CONTEXTS & OPERATOR ACTIONS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/contexts")
async def list_contexts(
    request: Request,
    status: Optional[ContextStatus] = None,
    chatbot_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    include_test_sessions: bool = False,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    contexts = await get_orchestrator(request).list_contexts(
        status=status, chatbot_id=chatbot_id, conversation_id=conversation_id,
        include_test_sessions=include_test_sessions, limit=limit, offset=offset,
    )
    return [c.model_dump(mode="json") for c in contexts]


@router.get("/api/v1/contexts/active")
async def list_active_contexts(request: Request):
    return [c.model_dump(mode="json") for c in await get_orchestrator(request).list_active()]


@router.get("/api/v1/contexts/stats")
async def context_stats(request: Request):
    return await get_orchestrator(request).stats()


@router.get("/api/v1/contexts/by-output/{node_id}")
async def find_by_node_output(node_id: str, request: Request):
    match = {k: v for k, v in request.query_params.items()}
    contexts = await get_orchestrator(request).find_by_node_output(node_id, **match)
    return [c.model_dump(mode="json") for c in contexts]


@router.get("/api/v1/contexts/{context_id}")
async def get_context(context_id: str, request: Request):
    context = await get_orchestrator(request).get_context(context_id)
    return context.model_dump(mode="json")


@router.post("/api/v1/contexts/{context_id}/force-complete")
async def force_complete(context_id: str, request: Request):
    context = await get_orchestrator(request).force_complete(context_id)
    return {"context_id": context.id, "status": context.status.value,
            "completion_reason": context.completion_reason}


@router.post("/api/v1/contexts/cleanup")
async def cleanup_contexts(request: Request):
    return {"expired": await get_orchestrator(request).cleanup()}


@router.post("/api/v1/conversations/{conversation_id}/stop")
async def stop_conversation(conversation_id: str, request: Request):
    context = await get_orchestrator(request).stop(conversation_id)
    if context is None:
        raise HTTPException(404, f"No active context for conversation {conversation_id}")
    return {"context_id": context.id, "status": context.status.value,
            "completion_reason": context.completion_reason}


@router.post("/api/v1/conversations/{conversation_id}/skip")
async def skip_node(conversation_id: str, request: Request):
    return _result_body(await get_orchestrator(request).skip_current_node(conversation_id))


# ══════════════════════════════════════════════════════════════
#  TEST SESSIONS
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/test-sessions")
async def start_test_session(req: TestSessionRequest, request: Request):
    result = await get_orchestrator(request).start_test_session(req.chatbot_id, req.metadata)
    return _result_body(result)


@router.post("/api/v1/test-sessions/{context_id}/messages")
async def send_test_message(context_id: str, req: TestMessageRequest, request: Request):
    result = await get_orchestrator(request).send_test_message(
        context_id, text=req.text, button_id=req.button_id,
        list_row_id=req.list_row_id, flow_response=req.flow_response,
    )
    return _result_body(result)


@router.post("/api/v1/test-sessions/{context_id}/pause")
async def pause_test_session(context_id: str, request: Request):
    context = await get_orchestrator(request).pause_test_session(context_id)
    return {"context_id": context.id, "paused": context.paused}


@router.post("/api/v1/test-sessions/{context_id}/resume")
async def resume_test_session(context_id: str, request: Request):
    context = await get_orchestrator(request).resume_test_session(context_id)
    return {"context_id": context.id, "paused": context.paused}


@router.get("/api/v1/test-sessions/{context_id}/events")
async def test_session_events(context_id: str, request: Request):
    return [e.model_dump(mode="json") for e in get_orchestrator(request).test_events(context_id)]


@router.websocket("/ws/test-sessions/{context_id}")
async def test_session_stream(websocket: WebSocket, context_id: str):
    """
    Streams a test session's execution events. Buffered events are replayed
    on connect; client frames {"text"|"button_id"|"list_row_id"} are fed to
    the session as customer messages.
    """
    orchestrator: FlowOrchestrator = websocket.app.state.orchestrator
    await websocket.accept()
    for event in orchestrator.test_events(context_id):
        await websocket.send_json(event.model_dump(mode="json"))

    async def forward(event: TestEvent) -> None:
        if event.session_id == context_id:
            await websocket.send_json(event.model_dump(mode="json"))

    recorder = orchestrator.observer if isinstance(orchestrator.observer, TestSessionRecorder) else None
    if recorder:
        recorder.subscribe(forward)
    try:
        while True:
            frame = await websocket.receive_json()
            try:
                await orchestrator.send_test_message(
                    context_id, text=frame.get("text", ""),
                    button_id=frame.get("button_id"), list_row_id=frame.get("list_row_id"),
                    flow_response=frame.get("flow_response"),
                )
            except (ConflictError, LookupError) as e:
                await websocket.send_json({"session_id": context_id, "event": "error",
                                           "payload": {"error": str(e)}})
    except WebSocketDisconnect:
        logger.info("test_stream_disconnected", context_id=context_id)
    finally:
        if recorder:
            recorder.unsubscribe(forward)


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[FlowOrchestrator] = None,
) -> FastAPI:
    settings = settings or get_settings()
    orchestrator = orchestrator or build_orchestrator(settings)
    uses_sql = settings.database.store_backend == "sql"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if uses_sql:
            await init_db()
        sweeper = None
        if settings.sweeper.enabled:
            sweeper = ContextSweeper(
                orchestrator.store, orchestrator.locks,
                interval_seconds=settings.sweeper.interval_seconds,
                batch_size=settings.sweeper.batch_size,
            )
            await sweeper.start_background()
        logger.info("flowpilot_started", store=type(orchestrator.store).__name__,
                    sweeper=settings.sweeper.enabled)
        yield
        if sweeper:
            await sweeper.stop()
        await orchestrator.close()
        if uses_sql:
            await close_db()
        logger.info("flowpilot_stopped")

    app = FastAPI(
        title="FlowPilot API",
        description="WhatsApp chatbot flow execution engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={
            "error": exc.kind.value, "detail": str(exc), "context_id": exc.context_id,
        })

    @app.exception_handler(ImportValidationError)
    async def import_error_handler(request: Request, exc: ImportValidationError):
        return JSONResponse(status_code=422, content={"error": "invalid_import", "errors": exc.errors})

    @app.exception_handler(ContextNotFoundError)
    @app.exception_handler(ChatbotNotFoundError)
    async def not_found_handler(request: Request, exc: LookupError):
        return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc)})

    app.include_router(router)
    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
