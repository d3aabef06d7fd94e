"""チャットイベントストリームの逐次デコーダー。"""

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, List, Union

import httpx

from ..models.stream import Delta, Done, Error, StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
INCOMPLETE_STREAM_MESSAGE = "stream ended before [DONE]"


class StreamDecoder:
    """
    任意の位置で分割されたバイト列からストリームイベントを復元する。

    各イベントは `data: <payload>` 行として空行区切りで送られる。チャンクの境界は
    イベントの境界と一致しないため、各チャンク末尾の未完成の行は持ち越し、
    改行が届いた時点で初めて処理する。

    1 インスタンスは 1 ストリーム専用。Done または Error を出力した後
    （あるいは close() 後）は何も出力しない。
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._terminated = False
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def terminated(self) -> bool:
        return self._terminated

    def decode(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """
        チャンクを 1 つ受け取り、それによって完成したイベントを返す。

        Args:
            chunk: トランスポートから受け取ったバイト列（文字列も可）

        Returns:
            ストリーム順のイベント。終了後は常に空
        """
        if self._terminated:
            return []

        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process_lines(lines)

    def finish(self) -> List[StreamEvent]:
        """
        入力の終わりを通知する。

        持ち越した行を改行付きとみなして処理し、[DONE] が届いていなければ
        Error で終端する。
        """
        if self._terminated:
            return []

        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        events = self._process_lines([tail]) if tail else []
        if not self._terminated:
            events.append(self._terminate(Error(INCOMPLETE_STREAM_MESSAGE)))
        return events

    def fail(self, message: str) -> List[StreamEvent]:
        """トランスポートエラーでストリームを終端する。"""
        if self._terminated:
            return []
        self._buffer = ""
        return [self._terminate(Error(message))]

    def close(self) -> None:
        """以降のイベントを出力せずに復号を止める。"""
        self._terminated = True
        self._buffer = ""

    async def aiter_events(
        self, chunks: AsyncIterable[Union[bytes, str]]
    ) -> AsyncIterator[StreamEvent]:
        """
        Response.aiter_bytes() などの非同期バイト列を逐次復号する。

        読み込み中の通信エラーは終端の Error に変換する。他所から close() された
        場合は次のチャンクを復号する前に終了する。
        """
        try:
            async for chunk in chunks:
                if self._terminated:
                    return
                for event in self.decode(chunk):
                    yield event
                if self._terminated:
                    return
        except httpx.StreamClosed:
            # キャンセルのために本文が閉じられた
            self.close()
            return
        except httpx.HTTPError as exc:
            logger.warning("Chat stream failed while reading: %s", exc)
            for event in self.fail(str(exc) or exc.__class__.__name__):
                yield event
            return

        for event in self.finish():
            yield event

    def _process_lines(self, lines: List[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for raw_line in lines:
            line = raw_line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue

            payload = line[len(DATA_PREFIX):]
            if payload == DONE_SENTINEL:
                events.append(self._terminate(Done()))
                break

            delta = self._parse_payload(payload)
            if delta is not None:
                events.append(delta)
        return events

    @staticmethod
    def _parse_payload(payload: str) -> Union[Delta, None]:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug("Skipping malformed stream payload: %r", payload)
            return None
        if not isinstance(data, dict):
            return None
        content = data.get("content")
        if not isinstance(content, str) or not content:
            return None
        return Delta(content)

    def _terminate(self, event: StreamEvent) -> StreamEvent:
        self._terminated = True
        self._buffer = ""
        return event
