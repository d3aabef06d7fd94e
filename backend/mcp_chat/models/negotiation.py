"""MCP ネゴシエーションの結果・プローブ結果・API モデル。"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .servers import ServerCapabilities, TransportKind


class FailureKind(str, Enum):
    """ネゴシエーション・ストリーム処理で扱う失敗の分類。"""

    TRANSPORT_TIMEOUT = "transport_timeout"
    NETWORK_ERROR = "network_error"
    PROTOCOL_MISMATCH = "protocol_mismatch"
    DECODE_ERROR = "decode_error"
    UPSTREAM_FAILURE = "upstream_failure"


class NegotiationState(str, Enum):
    """ネゴシエーターの状態遷移。"""

    IDLE = "idle"
    PROBING_TIER1 = "probing_tier1"
    PROBING_TIER2 = "probing_tier2"
    CONNECTED = "connected"
    NON_MCP_REACHABLE = "non_mcp_reachable"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ProbeOk:
    """HTTP レベルの応答を受け取れた場合の結果。"""

    status_code: int
    reason: str
    content_type: str
    body: bytes

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def status_line(self) -> str:
        return f"HTTP {self.status_code}: {self.reason}".rstrip(": ")


@dataclass(frozen=True)
class ProbeTimedOut:
    """タイムアウトで打ち切られた場合の結果。"""

    timeout_seconds: float


@dataclass(frozen=True)
class ProbeNetworkError:
    """DNS 解決失敗や接続拒否など、HTTP 応答に至らなかった場合の結果。"""

    detail: str


ProbeResult = Union[ProbeOk, ProbeTimedOut, ProbeNetworkError]


class NegotiationFailure(BaseModel):
    """失敗理由（種別付き）。"""

    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    message: str


class NegotiatedServerInfo(BaseModel):
    """initialize 応答の serverInfo。"""

    model_config = ConfigDict(frozen=True)

    name: str = "Unknown"
    version: str = "1.0.0"
    description: str = ""


class NegotiationOutcome(BaseModel):
    """1 回のネゴシエーション結果。生成後は変更しない。"""

    model_config = ConfigDict(frozen=True)

    state: NegotiationState
    reachable: bool
    mcp_supported: bool = False
    server_info: Optional[NegotiatedServerInfo] = None
    capabilities: Optional[ServerCapabilities] = None
    failure: Optional[NegotiationFailure] = None


class ConnectRequest(BaseModel):
    """/api/mcp/connect のリクエストボディ。必須チェックはルート側で行う。"""

    server_id: Optional[str] = Field(default=None, alias="serverId")
    url: Optional[str] = None
    transport: TransportKind = TransportKind.HTTP


class DisconnectRequest(BaseModel):
    """/api/mcp/disconnect のリクエストボディ。"""

    server_id: Optional[str] = Field(default=None, alias="serverId")


class ConnectResponse(BaseModel):
    """/api/mcp/connect の成功レスポンス。"""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    mcp_supported: bool = Field(alias="mcpSupported")
    server_info: Optional[NegotiatedServerInfo] = Field(default=None, alias="serverInfo")
    capabilities: Optional[ServerCapabilities] = None
