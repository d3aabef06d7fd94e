"""チャット履歴（セッションとメッセージ）の永続化。"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from pydantic import ValidationError

from ..config import settings
from ..models.chat import ChatHistory, ChatMessage, ChatSession
from .json_store import JsonStateStore

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 50
EMPTY_CHAT_SUMMARY = "Empty chat"


class ChatStorageError(Exception):
    """ChatStorage で発生する汎用エラー。"""


class ChatSessionNotFoundError(ChatStorageError):
    """指定されたセッションが存在しない場合のエラー。"""


def generate_summary(messages: List[ChatMessage]) -> str:
    """最初のユーザーメッセージの先頭 50 文字を要約として使う。"""
    if not messages:
        return ""
    first_user_message = next((m for m in messages if m.is_user), None)
    if first_user_message is None:
        return EMPTY_CHAT_SUMMARY
    content = first_user_message.content
    if len(content) > SUMMARY_MAX_CHARS:
        return content[:SUMMARY_MAX_CHARS] + "..."
    return content


def new_message_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid4().hex[:6]}"


class ChatStorage:
    """
    チャット履歴ドキュメントの読み書きを担当する。

    履歴は 1 つの JSON ドキュメントとして保存し、変更のたびに全体を書き直す。
    メッセージの追加は ChatSessionDriver からのみ行う。
    """

    def __init__(
        self,
        store: Optional[JsonStateStore] = None,
        *,
        storage_key: Optional[str] = None,
    ) -> None:
        self._store = store or JsonStateStore()
        self._storage_key = storage_key or settings.chat_history_storage_key

    def load_history(self) -> ChatHistory:
        """履歴を読み込む。存在しない・壊れている場合は空の履歴。"""
        document = self._store.load(self._storage_key)
        if document is None:
            return ChatHistory()
        try:
            return ChatHistory.model_validate(document)
        except ValidationError:
            logger.error("Error loading chat history", exc_info=True)
            return ChatHistory()

    def save_history(self, history: ChatHistory) -> None:
        self._store.save(self._storage_key, history.model_dump(mode="json", by_alias=True))

    def create_session(self, *, make_current: bool = True) -> ChatSession:
        """新しいセッションを作成して保存する。"""
        session = ChatSession(id=f"session-{int(time.time() * 1000)}-{uuid4().hex[:9]}")
        history = self.load_history()
        history.sessions.append(session)
        if make_current or history.current_session_id is None:
            history.current_session_id = session.id
        self.save_history(history)
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        history = self.load_history()
        return next((s for s in history.sessions if s.id == session_id), None)

    def set_current_session(self, session_id: str) -> None:
        history = self.load_history()
        self._require_session(history, session_id)
        history.current_session_id = session_id
        self.save_history(history)

    def add_message(self, session_id: str, message: ChatMessage) -> ChatSession:
        """
        セッションにメッセージを追加する。

        最初のメッセージが追加された時点でタイトルと要約を生成する。
        """
        history = self.load_history()
        session = self._require_session(history, session_id)
        session.messages.append(message)
        session.updated_at = datetime.now(timezone.utc)

        if len(session.messages) == 1:
            session.title = generate_summary(session.messages)
            session.summary = session.title

        self.save_history(history)
        return session

    def update_session_title(self, session_id: str, title: str) -> None:
        history = self.load_history()
        session = self._require_session(history, session_id)
        session.title = title
        session.updated_at = datetime.now(timezone.utc)
        self.save_history(history)

    def update_session_summary(self, session_id: str, summary: str) -> None:
        history = self.load_history()
        session = self._require_session(history, session_id)
        session.summary = summary
        session.updated_at = datetime.now(timezone.utc)
        self.save_history(history)

    def delete_session(self, session_id: str) -> None:
        """セッションを削除する。現在のセッションだった場合は先頭のセッションへ切り替える。"""
        history = self.load_history()
        history.sessions = [s for s in history.sessions if s.id != session_id]
        if history.current_session_id == session_id:
            history.current_session_id = history.sessions[0].id if history.sessions else None
        self.save_history(history)

    def clear_all_history(self) -> None:
        self._store.delete(self._storage_key)

    @staticmethod
    def _require_session(history: ChatHistory, session_id: str) -> ChatSession:
        for session in history.sessions:
            if session.id == session_id:
                return session
        raise ChatSessionNotFoundError(f"Chat session not found: {session_id}")
