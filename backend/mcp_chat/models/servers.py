"""MCP サーバー登録情報のモデル定義。"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _now_utc() -> datetime:
    """UTC 現在時刻を返す。"""
    return datetime.now(timezone.utc)


class TransportKind(str, Enum):
    """サーバーとの通信方式。"""

    HTTP = "http"
    SSE = "sse"
    STDIO = "stdio"


class ServerStatus(str, Enum):
    """サーバーの接続状態を表す列挙。"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ServerCapabilities(BaseModel):
    """initialize 応答で宣言された機能。"""

    tools: bool = False
    prompts: bool = False
    resources: bool = False


class ServerInfo(BaseModel):
    """ネゴシエーションで得たサーバー情報。"""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    version: str
    description: str = ""
    mcp_supported: bool = Field(default=False, alias="mcpSupported")


class ServerRecord(BaseModel):
    """登録済み MCP サーバーのドメインモデル。永続化時は camelCase で保存する。"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str = ""
    url: str
    transport: TransportKind = TransportKind.HTTP
    status: ServerStatus = ServerStatus.DISCONNECTED
    capabilities: Optional[ServerCapabilities] = None
    server_info: Optional[ServerInfo] = Field(default=None, alias="serverInfo")
    last_connected_at: Optional[datetime] = Field(default=None, alias="lastConnected")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: datetime = Field(default_factory=_now_utc, alias="createdAt")
    updated_at: datetime = Field(default_factory=_now_utc, alias="updatedAt")


class ServerCreateRequest(BaseModel):
    """サーバー登録リクエスト。"""

    name: str = Field(..., min_length=1, description="表示名")
    url: str = Field(..., min_length=1, description="サーバー URL")
    description: str = Field(default="", description="説明（任意）")
    transport: TransportKind = Field(default=TransportKind.HTTP, description="通信方式")


class ServerUpdateRequest(BaseModel):
    """サーバー編集リクエスト。未指定のフィールドは変更しない。"""

    name: Optional[str] = Field(default=None, min_length=1)
    url: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    transport: Optional[TransportKind] = None
