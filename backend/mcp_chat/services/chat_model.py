"""LLM の補完ストリームをチャットストリームのフレームへ変換するモデルプロキシ。"""

import json
import logging
from typing import AsyncIterator, Callable, Dict, List, Optional

from openai import AsyncOpenAI

from ..config import settings
from ..models.chat import ChatHistoryItem
from .stream_decoder import DATA_PREFIX, DONE_SENTINEL

logger = logging.getLogger(__name__)

UPSTREAM_APOLOGY = "Sorry, there was an error processing your request. Please try again."
DONE_FRAME = f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"


class ChatConfigError(Exception):
    """現在の設定ではモデルのエンドポイントを利用できない場合のエラー。"""


def encode_content_frame(content: str) -> str:
    """応答の断片を StreamDecoder が期待する形式の 1 フレームにする。"""
    return f"{DATA_PREFIX}{json.dumps({'content': content}, ensure_ascii=False)}\n\n"


def build_messages(message: str, chat_history: List[ChatHistoryItem]) -> List[Dict[str, str]]:
    """
    OpenAI 形式のメッセージ列を組み立てる。

    過去の発話は順序を保ち、新しいユーザーメッセージを常に最後に置く。
    """
    messages = [
        {"role": "user" if item.is_user else "assistant", "content": item.content}
        for item in chat_history
    ]
    messages.append({"role": "user", "content": message})
    return messages


def create_llm_client() -> AsyncOpenAI:
    """環境変数の設定から OpenAI 互換クライアントを生成する。"""
    if not settings.llm_configured:
        raise ChatConfigError("GEMINI_API_KEY not configured")
    return AsyncOpenAI(base_url=settings.llm_base_url, api_key=settings.gemini_api_key)


class ChatModelService:
    """
    モデルの応答を data: フレームとしてストリーミングする。

    応答開始後の失敗は通常の本文フレームとして謝罪文を送り、会話の流れを保つ。
    ストリームは必ず [DONE] で閉じる。
    """

    def __init__(
        self,
        client_factory: Optional[Callable[[], AsyncOpenAI]] = None,
        *,
        model_name: Optional[str] = None,
    ) -> None:
        self._client_factory = client_factory or create_llm_client
        self._model_name = model_name or settings.llm_model

    def open_client(self) -> AsyncOpenAI:
        """
        モデルのクライアントを生成する。

        Raises:
            ChatConfigError: API キーが未設定の場合
        """
        return self._client_factory()

    async def stream_frames(
        self,
        client: AsyncOpenAI,
        message: str,
        chat_history: List[ChatHistoryItem],
    ) -> AsyncIterator[str]:
        """1 回分の応答をフレームとして順に返し、最後に [DONE] を返す。"""
        try:
            stream = await client.chat.completions.create(
                model=self._model_name,
                messages=build_messages(message, chat_history),
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_output_tokens,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield encode_content_frame(text)
        except Exception:  # noqa: BLE001
            logger.exception("Error in model streaming")
            yield encode_content_frame(UPSTREAM_APOLOGY)

        yield DONE_FRAME
