"""到達性チェックと MCP initialize ハンドシェイクによるサーバー分類。"""

import json
import logging
from typing import Any, Optional

from ..config import settings
from ..models.negotiation import (
    FailureKind,
    NegotiatedServerInfo,
    NegotiationFailure,
    NegotiationOutcome,
    NegotiationState,
    ProbeNetworkError,
    ProbeOk,
    ProbeResult,
    ProbeTimedOut,
)
from ..models.servers import ServerCapabilities, TransportKind
from .probe import TransportProbe

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = (
    "Network error: unable to reach the server. Check the URL and your network connectivity."
)

# httpx/anyio が詳細を持たない場合に返す汎用メッセージ
_GENERIC_NETWORK_MESSAGES = {
    "",
    "all connection attempts failed",
    "connection failed",
    "fetch failed",
}

# サーバーは稼働しているがネゴシエートした Content-Type を拒否した
_SOFT_FAIL_STATUS = 406


def _is_json_content_type(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def _friendly_network_message(detail: str) -> str:
    """汎用的なトランスポートエラーを利用者向けのメッセージへ正規化する。"""
    normalized = (detail or "").strip()
    if normalized.lower() in _GENERIC_NETWORK_MESSAGES:
        return NETWORK_ERROR_MESSAGE
    return f"{NETWORK_ERROR_MESSAGE} ({normalized})"


class McpNegotiator:
    """
    2 段階のハンドシェイクでサーバーを分類する。

    - Tier 1: GET で到達性を確認し、2xx なら MCP 非対応でも接続済みとして扱う
    - Tier 2: JSON-RPC initialize を POST し、serverInfo と capabilities を取得する

    negotiate() は例外を送出せず、常に NegotiationOutcome を返す。
    """

    def __init__(
        self,
        probe: Optional[TransportProbe] = None,
        *,
        tier1_timeout_seconds: Optional[float] = None,
        tier2_timeout_seconds: Optional[float] = None,
    ) -> None:
        self._probe = probe or TransportProbe()
        self._tier1_timeout = float(
            tier1_timeout_seconds
            if tier1_timeout_seconds is not None
            else settings.probe_tier1_timeout_seconds
        )
        self._tier2_timeout = float(
            tier2_timeout_seconds
            if tier2_timeout_seconds is not None
            else settings.probe_tier2_timeout_seconds
        )

    async def negotiate(
        self, url: str, transport: TransportKind = TransportKind.HTTP
    ) -> NegotiationOutcome:
        """URL に対してネゴシエーションを行い、結果を返す。"""
        try:
            outcome = await self._negotiate(url, TransportKind(transport))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while negotiating with %s", url)
            outcome = self._unreachable(FailureKind.UPSTREAM_FAILURE, str(exc) or repr(exc))

        logger.info(
            "Negotiation with %s finished: state=%s mcp_supported=%s",
            url,
            outcome.state.value,
            outcome.mcp_supported,
        )
        return outcome

    async def _negotiate(self, url: str, transport: TransportKind) -> NegotiationOutcome:
        if transport == TransportKind.STDIO:
            return self._unreachable(
                FailureKind.PROTOCOL_MISMATCH,
                "stdio transport cannot be negotiated over HTTP",
            )

        state = NegotiationState.PROBING_TIER1
        logger.debug("%s: %s", url, state.value)
        tier1 = await self._probe.probe(
            url,
            method="GET",
            headers={"Accept": "*/*"},
            timeout_seconds=self._tier1_timeout,
        )
        if isinstance(tier1, ProbeOk) and tier1.is_success:
            # 単純な HTTP エンドポイントは死活監視目的で登録されることが多い
            return NegotiationOutcome(
                state=NegotiationState.NON_MCP_REACHABLE,
                reachable=True,
                mcp_supported=False,
            )

        state = NegotiationState.PROBING_TIER2
        logger.debug("%s: %s (tier 1 result: %r)", url, state.value, tier1)
        tier2 = await self._probe.probe(
            url,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json, text/event-stream",
            },
            body=json.dumps(self._initialize_envelope()).encode("utf-8"),
            timeout_seconds=self._tier2_timeout,
        )
        return self._classify_handshake(tier2)

    def _initialize_envelope(self) -> dict:
        """JSON-RPC 2.0 initialize リクエストを組み立てる。"""
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {
                "protocolVersion": settings.mcp_protocol_version,
                "capabilities": {"tools": {}, "prompts": {}, "resources": {}},
                "clientInfo": {
                    "name": settings.mcp_client_name,
                    "version": settings.mcp_client_version,
                },
            },
        }

    def _classify_handshake(self, result: ProbeResult) -> NegotiationOutcome:
        """Tier 2 の応答を分類する。"""
        if isinstance(result, ProbeTimedOut):
            return self._unreachable(
                FailureKind.TRANSPORT_TIMEOUT,
                f"Connection timed out after {result.timeout_seconds:g} seconds",
            )
        if isinstance(result, ProbeNetworkError):
            return self._unreachable(
                FailureKind.NETWORK_ERROR, _friendly_network_message(result.detail)
            )

        if not result.is_success:
            if result.status_code == _SOFT_FAIL_STATUS:
                return self._non_mcp(result.status_line)
            return self._unreachable(FailureKind.PROTOCOL_MISMATCH, result.status_line)

        if not _is_json_content_type(result.content_type):
            return self._non_mcp(
                f"Expected a JSON response, got {result.content_type or 'no content type'}"
            )

        try:
            payload = json.loads(result.body)
        except (ValueError, UnicodeDecodeError) as exc:
            return self._non_mcp(f"Invalid JSON in initialize response: {exc}")

        if not isinstance(payload, dict) or not isinstance(payload.get("result"), dict):
            error = payload.get("error") if isinstance(payload, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            return self._non_mcp(
                f"initialize was rejected: {message}" if message else "initialize returned no result"
            )

        return NegotiationOutcome(
            state=NegotiationState.CONNECTED,
            reachable=True,
            mcp_supported=True,
            server_info=self._extract_server_info(payload["result"]),
            capabilities=self._extract_capabilities(payload["result"]),
        )

    @staticmethod
    def _extract_server_info(result: dict) -> NegotiatedServerInfo:
        raw = result.get("serverInfo")
        if not isinstance(raw, dict):
            return NegotiatedServerInfo()
        fields: dict[str, Any] = {}
        for key in ("name", "version", "description"):
            value = raw.get(key)
            if isinstance(value, str) and value:
                fields[key] = value
        return NegotiatedServerInfo(**fields)

    @staticmethod
    def _extract_capabilities(result: dict) -> Optional[ServerCapabilities]:
        raw = result.get("capabilities")
        if not isinstance(raw, dict):
            return None
        return ServerCapabilities(
            tools="tools" in raw,
            prompts="prompts" in raw,
            resources="resources" in raw,
        )

    @staticmethod
    def _non_mcp(detail: str) -> NegotiationOutcome:
        return NegotiationOutcome(
            state=NegotiationState.NON_MCP_REACHABLE,
            reachable=True,
            mcp_supported=False,
            failure=NegotiationFailure(kind=FailureKind.PROTOCOL_MISMATCH, message=detail),
        )

    @staticmethod
    def _unreachable(kind: FailureKind, message: str) -> NegotiationOutcome:
        return NegotiationOutcome(
            state=NegotiationState.UNREACHABLE,
            reachable=False,
            failure=NegotiationFailure(kind=kind, message=message),
        )
