"""ストリーミングチャットとチャット履歴の API。"""

import logging

from fastapi import APIRouter, Response, status
from fastapi.responses import PlainTextResponse, StreamingResponse

from ..models.chat import (
    ChatHistory,
    ChatSession,
    ChatSessionUpdateRequest,
    ChatStreamRequest,
)
from ..services.chat_model import ChatConfigError, ChatModelService
from ..services.chat_storage import ChatSessionNotFoundError, ChatStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

# Service instances
chat_model_service = ChatModelService()
chat_storage = ChatStorage()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


@router.post("/stream")
async def stream_chat(body: ChatStreamRequest):
    """
    message と過去の chatHistory からモデルの応答をストリーミングする。

    本文は空行区切りの data: {"content": ...} フレームで、data: [DONE] で終わる。

    Returns:
        message が無い場合は 400、モデルが未設定の場合は 500
    """
    message = (body.message or "").strip()
    if not message:
        return PlainTextResponse("Message is required", status_code=status.HTTP_400_BAD_REQUEST)

    try:
        client = chat_model_service.open_client()
    except ChatConfigError as e:
        logger.error(f"Chat model is not configured: {e}")
        return PlainTextResponse(str(e), status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return StreamingResponse(
        chat_model_service.stream_frames(client, message, body.chat_history),
        media_type="text/plain; charset=utf-8",
        headers=STREAM_HEADERS,
    )


@router.get("/history", response_model=ChatHistory)
async def get_history() -> ChatHistory:
    """保存済みのセッション一覧と選択中のセッションを返す。"""
    return chat_storage.load_history()


@router.delete(
    "/history",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
async def clear_history() -> Response:
    """チャット履歴をすべて削除する。"""
    chat_storage.clear_all_history()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions", response_model=ChatSession, status_code=status.HTTP_201_CREATED)
async def create_session() -> ChatSession:
    """新しいセッションを作成し、選択中にする。"""
    return chat_storage.create_session()


@router.get("/sessions/{session_id}", response_model=ChatSession)
async def get_session(session_id: str) -> ChatSession:
    session = chat_storage.get_session(session_id)
    if session is None:
        raise ChatSessionNotFoundError(f"Chat session not found: {session_id}")
    return session


@router.patch("/sessions/{session_id}", response_model=ChatSession)
async def update_session(session_id: str, body: ChatSessionUpdateRequest) -> ChatSession:
    """タイトル・要約を編集する。"""
    if body.title is not None:
        chat_storage.update_session_title(session_id, body.title.strip())
    if body.summary is not None:
        chat_storage.update_session_summary(session_id, body.summary.strip())
    return await get_session(session_id)


@router.post("/sessions/{session_id}/select", response_model=ChatHistory)
async def select_session(session_id: str) -> ChatHistory:
    """選択中のセッションを切り替える。"""
    chat_storage.set_current_session(session_id)
    return chat_storage.load_history()


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
async def delete_session(session_id: str) -> Response:
    """セッションを削除する。存在しない場合は 404。"""
    if chat_storage.get_session(session_id) is None:
        raise ChatSessionNotFoundError(f"Chat session not found: {session_id}")
    chat_storage.delete_session(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
