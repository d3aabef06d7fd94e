"""任意の URL に対して時間制限付きの HTTP リクエストを 1 回だけ発行するプローブ。"""

import asyncio
import logging
from typing import Callable, Dict, Optional

import httpx

from ..config import settings
from ..models.negotiation import ProbeNetworkError, ProbeOk, ProbeResult, ProbeTimedOut

logger = logging.getLogger(__name__)

HttpClientFactory = Callable[[float], httpx.AsyncClient]


def _default_http_client_factory(timeout_seconds: float) -> httpx.AsyncClient:
    """プローブ用の httpx.AsyncClient を生成する。"""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds), follow_redirects=True
    )


class TransportProbe:
    """
    低レベルの到達性チェックを行う。

    応答をプロトコル的に解釈せず、ProbeOk / ProbeTimedOut / ProbeNetworkError の
    いずれかに分類して返す。状態を持たないため並行呼び出しに安全。
    """

    def __init__(
        self,
        *,
        http_client_factory: Optional[HttpClientFactory] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        # テスト時に MockTransport 付きのクライアントへ差し替えられるようにする
        self._http_client_factory = http_client_factory or _default_http_client_factory
        self._user_agent = user_agent or settings.probe_user_agent

    async def probe(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        timeout_seconds: float,
    ) -> ProbeResult:
        """
        リクエストを 1 回発行し、結果を分類する。

        timeout_seconds は接続確立を含むリクエスト全体の壁時計時間を制限する。
        期限を過ぎた場合は実行中のリクエストをキャンセルして ProbeTimedOut を返す。
        """
        request_headers = {"User-Agent": self._user_agent}
        request_headers.update(headers or {})

        try:
            async with self._http_client_factory(timeout_seconds) as client:
                response = await asyncio.wait_for(
                    client.request(method, url, headers=request_headers, content=body),
                    timeout=timeout_seconds,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.debug("%s %s timed out after %.1fs", method, url, timeout_seconds)
            return ProbeTimedOut(timeout_seconds=timeout_seconds)
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            logger.debug("%s %s failed: %r", method, url, exc)
            return ProbeNetworkError(detail=str(exc))

        return ProbeOk(
            status_code=response.status_code,
            reason=response.reason_phrase,
            content_type=response.headers.get("content-type", ""),
            body=response.content,
        )
