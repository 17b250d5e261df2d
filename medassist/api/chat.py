import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from medassist.api.deps import get_services, optional_user_id
from medassist.container import Services
from medassist.core.errors import CompletionError
from medassist.core.logging import get_logger
from medassist.models.chat import ChatRequest
from medassist.services.chat import ChatPrompt, ContextDegraded

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["chat"])


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _context_event(prompt: ChatPrompt) -> dict[str, Any]:
    degraded = isinstance(prompt.context, ContextDegraded)
    return {
        "user_context": "degraded" if degraded else "resolved",
        "missing": list(prompt.context.missing) if degraded else [],
        "documents": len(prompt.matches),
    }


@router.post("/chat")
async def chat(
    payload: ChatRequest,
    user_id: str | None = Depends(optional_user_id),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """Answer a chat message as a server-sent event stream.

    Events: context, token ({"delta": ...}), done, error. A newer request
    with the same chat_id aborts this one.
    """
    streams = services.streams
    cancel = streams.begin(payload.chat_id)

    # Wait for the first token so an LLM failure is still a plain HTTP error.
    tokens = None
    try:
        prompt = await services.chat.prepare(payload, user_id)
        tokens = services.chat.stream_reply(prompt, cancel)
        try:
            first = await tokens.__anext__()
        except StopAsyncIteration:
            first = None
    except CompletionError as exc:
        streams.end(payload.chat_id, cancel)
        if exc.aborted:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Chat request superseded.",
            ) from exc
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        ) from exc
    except BaseException:
        cancel.set()
        if tokens is not None:
            await tokens.aclose()
        streams.end(payload.chat_id, cancel)
        raise

    async def event_stream():
        chunks = 0
        try:
            yield _emit_sse("context", _context_event(prompt))
            if first is not None:
                chunks += 1
                yield _emit_sse("token", {"delta": first})
                async for token in tokens:
                    chunks += 1
                    yield _emit_sse("token", {"delta": token})
            yield _emit_sse("done", {"chunks": chunks})
        except CompletionError as exc:
            logger.warning("Chat stream ended early: %s", exc)
            yield _emit_sse("error", {"message": str(exc), "aborted": exc.aborted})
        finally:
            cancel.set()
            await tokens.aclose()
            streams.end(payload.chat_id, cancel)

    return StreamingResponse(event_stream(), media_type="text/event-stream")
