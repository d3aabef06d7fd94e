"""チャット履歴のモデル定義。永続化・API では camelCase を使う。"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """セッション内の 1 発話。"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    content: str
    is_user: bool = Field(alias="isUser")
    timestamp: datetime = Field(default_factory=_now_utc)


class ChatSession(BaseModel):
    """タイトル付きの発話列。"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = "New Chat"
    summary: str = ""
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now_utc, alias="createdAt")
    updated_at: datetime = Field(default_factory=_now_utc, alias="updatedAt")


class ChatHistory(BaseModel):
    """保存済みの全セッションと、選択中のセッション。"""

    model_config = ConfigDict(populate_by_name=True)

    sessions: List[ChatSession] = Field(default_factory=list)
    current_session_id: Optional[str] = Field(default=None, alias="currentSessionId")


class ChatHistoryItem(BaseModel):
    """新しいメッセージと一緒に送る過去の発話。"""

    model_config = ConfigDict(populate_by_name=True)

    content: str
    is_user: bool = Field(alias="isUser")


class ChatStreamRequest(BaseModel):
    """ストリーミングチャット API のリクエストボディ。"""

    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    chat_history: List[ChatHistoryItem] = Field(default_factory=list, alias="chatHistory")


class ChatSessionUpdateRequest(BaseModel):
    """セッション編集リクエスト。未指定のフィールドは変更しない。"""

    title: Optional[str] = Field(default=None, min_length=1)
    summary: Optional[str] = None
