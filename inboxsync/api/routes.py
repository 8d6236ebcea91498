"""
HTTP and WebSocket routes.

Thin mappings onto the core services:
- GET  /api/emails/{id}           fetch one record
- POST /api/suggest-reply         retrieval-grounded reply suggestion
- POST /api/training-examples     append a retrieval example
- GET  /api/sync/status           supervisor state per account
- GET  /api/llm/usage             generative call usage and cost
- GET  /api/notifications/status  per-sink configured and reachable flags
- WS   /ws                        live newEmail events

Errors from the core are InboxSyncError subclasses; main.py turns them
into structured JSON responses.
"""

import logging

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect

from inboxsync.agent.schemas import SuggestionRequest, TrainingExampleRequest
from inboxsync.context import AppContext
from inboxsync.errors import ValidationError
from inboxsync.logging.audit import audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["emails"])
ws_router = APIRouter()


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


@router.get("/emails/{record_id}")
async def get_email(record_id: str, ctx: AppContext = Depends(get_context)):
    """Fetch one email record by id. 404 if it does not exist."""
    if not record_id.strip():
        raise ValidationError("Email id is required")
    record = await ctx.store.fetch_by_id(record_id)
    return {"success": True, "data": record.to_document()}


@router.post("/suggest-reply")
async def suggest_reply(request: SuggestionRequest, ctx: AppContext = Depends(get_context)):
    """
    Draft a reply for an email, grounded on the closest stored examples.

    Request body:
    {
        "subject": "Interview next week",
        "body": "We would like to invite you for an interview...",
        "from": "recruiter@example.com"
    }
    """
    suggestion = await ctx.retrieval.suggest_reply(request)
    audit.info(
        "api.reply_suggested",
        confidence=suggestion.confidence,
        example_count=len(suggestion.examples),
    )
    return {
        "success": True,
        "data": {
            "suggested_reply": suggestion.reply,
            "confidence": suggestion.confidence,
            "relevant_examples": [
                {"context": d.context, "email": d.email, "reply": d.reply}
                for d in suggestion.examples
            ],
        },
    }


@router.post("/training-examples")
async def add_training_example(
    request: TrainingExampleRequest,
    ctx: AppContext = Depends(get_context),
):
    """Append one (context, email, reply) example to the retrieval index."""
    document = await ctx.retrieval.add_example(request.context, request.email, request.reply)
    return {"success": True, "data": document.model_dump(), "stats": ctx.retrieval.stats()}


@router.get("/sync/status")
async def sync_status(ctx: AppContext = Depends(get_context)):
    return ctx.supervisors.status()


@router.get("/llm/usage")
async def llm_usage(ctx: AppContext = Depends(get_context)):
    """Token usage and cost of generative calls since startup."""
    return {"success": True, "data": ctx.llm.get_session_stats()}


@router.get("/notifications/status")
async def notification_status(ctx: AppContext = Depends(get_context)):
    """Test each configured sink once. Slack runs auth.test; the webhook gets a webhook_test event."""
    return {"success": True, "data": await ctx.dispatcher.check_sinks()}


@ws_router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """Push newEmail events to the client until it disconnects."""
    broadcaster = websocket.app.state.ctx.broadcaster
    await broadcaster.connect(websocket)
    try:
        while True:
            # Clients do not send anything meaningful; this just detects disconnects.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)
