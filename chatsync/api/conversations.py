"""
Conversation endpoints: send, read, mark seen and live stream.
"""
import asyncio
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect, status

from chatsync.api.deps import get_services
from chatsync.core.errors import ForbiddenConversationError
from chatsync.core.logging import get_logger
from chatsync.core.security import get_current_uid, verify_session_token
from chatsync.schemas.message import (
    ChatMessage,
    ConversationResponse,
    ErrorResponse,
    MessagesListResponse,
    SeenResponse,
    SendMessageRequest,
)
from chatsync.services.container import ChatServices
from chatsync.services.directory import conversation_id as make_conversation_id

logger = get_logger(__name__)

router = APIRouter(prefix="/conversations", tags=["Conversations"])

SEND_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing authentication"},
    403: {"model": ErrorResponse, "description": "Sender is not the authenticated user or not a participant"},
    422: {"model": ErrorResponse, "description": "Empty message or wrong conversation"},
    503: {"model": ErrorResponse, "description": "Message store unavailable"},
}

IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


@router.get(
    "/resolve",
    response_model=ConversationResponse,
    summary="Resolve conversation id",
    description="The id both participants use for their shared conversation.",
)
async def resolve_conversation(
    user_a: Annotated[str, Query(min_length=1)],
    user_b: Annotated[str, Query(min_length=1)],
) -> ConversationResponse:
    return ConversationResponse(conversation_id=make_conversation_id(user_a, user_b))


@router.post(
    "/{conversation_id}/messages",
    response_model=ChatMessage,
    status_code=status.HTTP_201_CREATED,
    responses=SEND_ERRORS,
    summary="Send text message",
)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    uid: Annotated[str, Depends(get_current_uid)],
    services: Annotated[ChatServices, Depends(get_services)],
) -> ChatMessage:
    """
    Append a text message to the conversation.

    Returns once the message is stored with status ``sent``; the delivered
    transition, cache refresh and push notification happen afterwards.
    """
    return await services.chat.send(
        uid,
        body.sender_id,
        body.receiver_id,
        text=body.text,
        message_id=body.message_id,
        expected_conversation_id=conversation_id,
    )


@router.post(
    "/{conversation_id}/images",
    response_model=ChatMessage,
    status_code=status.HTTP_201_CREATED,
    responses={**SEND_ERRORS, 502: {"model": ErrorResponse, "description": "Image upload failed"}},
    summary="Send image message",
    description="Raw image bytes in the request body; optional caption as ``text``.",
)
async def send_image(
    conversation_id: str,
    request: Request,
    uid: Annotated[str, Depends(get_current_uid)],
    services: Annotated[ChatServices, Depends(get_services)],
    sender_id: Annotated[str, Query(min_length=1)],
    receiver_id: Annotated[str, Query(min_length=1)],
    text: Annotated[Optional[str], Query(max_length=4096)] = None,
) -> ChatMessage:
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    data = await request.body()
    return await services.chat.send(
        uid,
        sender_id,
        receiver_id,
        text=text,
        image=data,
        image_extension=IMAGE_EXTENSIONS.get(content_type, "jpg"),
        expected_conversation_id=conversation_id,
    )


@router.get(
    "/{conversation_id}/messages",
    response_model=MessagesListResponse,
    summary="Conversation snapshot",
    description="Messages ordered by timestamp; served from the local cache when the store is down.",
)
async def list_messages(
    conversation_id: str,
    uid: Annotated[str, Depends(get_current_uid)],
    services: Annotated[ChatServices, Depends(get_services)],
) -> MessagesListResponse:
    messages, source = await services.chat.history(uid, conversation_id)

    logger.debug(
        "Listed messages",
        extra={"extra_data": {"conversation_id": conversation_id, "total": len(messages), "source": source}},
    )
    return MessagesListResponse(
        conversation_id=conversation_id,
        data=messages,
        total=len(messages),
        source=source,
    )


@router.get(
    "/{conversation_id}/cache",
    response_model=MessagesListResponse,
    summary="Cached snapshot",
)
async def cached_messages(
    conversation_id: str,
    uid: Annotated[str, Depends(get_current_uid)],
    services: Annotated[ChatServices, Depends(get_services)],
) -> MessagesListResponse:
    messages = await services.chat.cached(uid, conversation_id)
    return MessagesListResponse(
        conversation_id=conversation_id,
        data=messages,
        total=len(messages),
        source="cache",
    )


@router.post(
    "/{conversation_id}/messages/{message_id}/seen",
    response_model=SeenResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Mark message seen",
    description="Recipient only. Best effort; failures are logged and reported as updated=false.",
)
async def mark_seen(
    conversation_id: str,
    message_id: str,
    uid: Annotated[str, Depends(get_current_uid)],
    services: Annotated[ChatServices, Depends(get_services)],
) -> SeenResponse:
    updated = await services.chat.mark_seen(uid, conversation_id, message_id)
    return SeenResponse(updated=updated)


@router.websocket("/{conversation_id}/stream")
async def stream_messages(
    websocket: WebSocket,
    conversation_id: str,
    token: Optional[str] = None,
) -> None:
    """
    Push the full ordered snapshot on connect and after every change.

    Frames sent by the client are ignored; disconnecting cancels the
    subscription.
    """
    services: ChatServices = websocket.app.state.services
    uid = verify_session_token(services.settings.auth_secret, token)
    if uid is None:
        logger.warning("Stream rejected: missing authentication")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        services.chat.authorize(uid, conversation_id)
    except ForbiddenConversationError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info("Stream opened", extra={"extra_data": {"conversation_id": conversation_id, "uid": uid}})

    async def pump() -> None:
        stream = services.chat.stream(uid, conversation_id)
        try:
            async for snapshot in stream:
                await websocket.send_json(
                    {
                        "conversation_id": conversation_id,
                        "data": [m.model_dump(mode="json") for m in snapshot],
                    }
                )
        finally:
            await stream.aclose()

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        pump_task.cancel()
        await asyncio.gather(pump_task, return_exceptions=True)
        logger.info("Stream closed", extra={"extra_data": {"conversation_id": conversation_id, "uid": uid}})
