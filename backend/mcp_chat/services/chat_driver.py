"""チャットの 1 往復（送信とストリーム受信）を扱うクライアント側ドライバー。"""

import logging
from typing import Callable, List, Optional

import httpx

from ..config import settings
from ..models.chat import ChatMessage
from ..models.stream import Delta, Done, Error
from .chat_storage import ChatStorage, new_message_id
from .stream_decoder import StreamDecoder

logger = logging.getLogger(__name__)

CLIENT_APOLOGY = "Sorry, there was an error processing your message. Please try again."

# httpx.InvalidURL と httpx.StreamError は HTTPError を継承しない
_TRANSPORT_ERRORS = (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError)

DeltaCallback = Callable[[str, str], None]


def _default_http_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.chat_request_timeout_seconds, connect=10.0)
    )


class ChatSessionDriver:
    """
    ユーザーの発話をストリーミングエンドポイントへ送り、応答を履歴へ反映する。

    - ユーザー発話と確定したアシスタント発話を ChatStorage へ追加する
    - 応答ごとに新しい StreamDecoder で本文を復号する
    - 途中経過はコールバックで通知する
    - 失敗時も謝罪文でアシスタント発話を必ず確定させる
    """

    def __init__(
        self,
        storage: Optional[ChatStorage] = None,
        *,
        endpoint_url: Optional[str] = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self._storage = storage or ChatStorage()
        self._endpoint_url = endpoint_url or settings.chat_stream_url
        self._http_client_factory = http_client_factory or _default_http_client_factory
        self._active_decoder: Optional[StreamDecoder] = None
        self._active_response: Optional[httpx.Response] = None

    @property
    def in_progress(self) -> bool:
        return self._active_decoder is not None

    async def send_message(
        self,
        session_id: Optional[str],
        text: str,
        on_delta: Optional[DeltaCallback] = None,
    ) -> ChatMessage:
        """
        1 往復を実行し、保存したアシスタント発話を返す。

        Args:
            session_id: 対象セッション。None の場合は新規作成する
            text: ユーザーのメッセージ
            on_delta: 断片ごとに on_delta(fragment, accumulated) で呼ばれる

        Raises:
            ValueError: メッセージが空の場合
            ChatSessionNotFoundError: セッションが存在しない場合
        """
        content = (text or "").strip()
        if not content:
            raise ValueError("message must not be empty")

        if session_id is None:
            session_id = self._storage.create_session().id

        session = self._storage.get_session(session_id)
        prior_messages: List[ChatMessage] = list(session.messages) if session else []

        user_message = ChatMessage(id=new_message_id(), content=content, is_user=True)
        self._storage.add_message(session_id, user_message)

        reply = await self._stream_reply(content, prior_messages, on_delta)

        assistant_message = ChatMessage(id=new_message_id(), content=reply, is_user=False)
        self._storage.add_message(session_id, assistant_message)
        return assistant_message

    async def cancel(self) -> None:
        """実行中の応答を止める。受信済みの本文はそのまま確定される。"""
        decoder, response = self._active_decoder, self._active_response
        if decoder is not None:
            decoder.close()
        if response is not None:
            await response.aclose()

    async def _stream_reply(
        self,
        message: str,
        prior_messages: List[ChatMessage],
        on_delta: Optional[DeltaCallback],
    ) -> str:
        payload = {
            "message": message,
            "chatHistory": [
                {"content": m.content, "isUser": m.is_user} for m in prior_messages
            ],
        }
        decoder = StreamDecoder()
        accumulated = ""

        try:
            async with self._http_client_factory() as client:
                async with client.stream("POST", self._endpoint_url, json=payload) as response:
                    if response.status_code >= 400:
                        logger.error(
                            "Chat endpoint returned HTTP %s", response.status_code
                        )
                        return CLIENT_APOLOGY

                    self._active_decoder = decoder
                    self._active_response = response
                    async for event in decoder.aiter_events(response.aiter_bytes()):
                        if isinstance(event, Delta):
                            accumulated += event.text
                            if on_delta is not None:
                                on_delta(event.text, accumulated)
                        elif isinstance(event, Done):
                            break
                        elif isinstance(event, Error):
                            logger.warning("Chat stream ended with error: %s", event.message)
                            return self._with_apology(accumulated)
        except _TRANSPORT_ERRORS as exc:
            logger.error("Error sending message: %s", exc)
            return self._with_apology(accumulated)
        finally:
            self._active_decoder = None
            self._active_response = None

        return accumulated

    @staticmethod
    def _with_apology(accumulated: str) -> str:
        if not accumulated:
            return CLIENT_APOLOGY
        return f"{accumulated}\n\n{CLIENT_APOLOGY}"
