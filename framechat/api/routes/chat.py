"""
Chat endpoint.

POST /chat answers a question about one video as a Server-Sent Events
stream of OpenAI-style chunks. Everything that can fail cleanly (bad
input, unknown video, no analyses yet, provider unreachable) fails
before the first byte is sent and gets a normal status code. Once the
stream is open, a failure becomes a single error record instead.

The question is stored before the model is called, so a client that
gets an error can simply retry.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ...core.errors import ChatNotReadyError, CompletionProviderError, OperationTimeoutError, VideoNotFoundError
from ...core.streaming import SSE_HEADERS
from ..dependencies import ContextBuilderDep, CurrentUser, StreamingRelayDep
from ..schemas import CamelModel

logger = logging.getLogger(__name__)

router = APIRouter()


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatRequest(CamelModel):
    """
    Either `message`, or `messages` holding the conversation so far.

    With `messages`, the last user entry is the question and overrides
    `message`; the entries before it are the history sent to the model.
    Trailing entries after it (a placeholder assistant turn, say) are
    dropped.
    """
    video_id: Optional[UUID] = None
    message: Optional[str] = None
    messages: Optional[list[ChatMessage]] = None

    def question_and_history(self) -> tuple[Optional[str], Optional[list[dict]]]:
        """
        Split the request into (question, client history).

        History is None when the client sent no message list, meaning the
        stored conversation should be used instead.
        """
        if self.messages:
            for index in range(len(self.messages) - 1, -1, -1):
                entry = self.messages[index]
                if entry.role == "user" and entry.content.strip():
                    return entry.content, [m.model_dump() for m in self.messages[:index]]

        if self.message and self.message.strip():
            history = [m.model_dump() for m in self.messages] if self.messages else None
            return self.message, history

        return None, None


@router.post(
    "",
    summary="Ask a question about a video",
    response_class=StreamingResponse,
    responses={
        200: {"content": {"text/event-stream": {}}, "description": "Answer stream"},
        409: {"description": "Video has no frame analyses yet"},
        502: {"description": "Model provider failed"},
    },
)
async def chat(
    request: ChatRequest,
    user: CurrentUser,
    builder: ContextBuilderDep,
    relay: StreamingRelayDep,
) -> StreamingResponse:
    question, client_history = request.question_and_history()
    if request.video_id is None or question is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields",
        )

    try:
        turn = await builder.prepare(
            user,
            request.video_id,
            question,
            client_history=client_history,
        )
    except VideoNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Video {request.video_id} not found",
        )
    except ChatNotReadyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except OperationTimeoutError as e:
        logger.error(
            "Chat context could not be loaded",
            extra={"video_id": str(request.video_id), "error": str(e)}
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    try:
        stream = await relay.open(turn)
    except (CompletionProviderError, OperationTimeoutError) as e:
        logger.error(
            "Failed to open chat stream",
            extra={"video_id": str(request.video_id), "error": str(e)}
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to process chat request",
        )

    return StreamingResponse(
        stream.events(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
