"""登録済み MCP サーバーを管理するサービス層。"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple
from uuid import uuid4

from pydantic import ValidationError

from ..config import settings
from ..models.negotiation import NegotiationOutcome
from ..models.servers import (
    ServerCapabilities,
    ServerInfo,
    ServerRecord,
    ServerStatus,
    TransportKind,
)
from .json_store import JsonStateStore
from .negotiator import McpNegotiator

logger = logging.getLogger(__name__)
_UNSET = object()


class RegistryError(Exception):
    """ServerRegistry で発生する汎用エラー。"""


class ServerNotFoundError(RegistryError):
    """指定された server_id が登録されていない場合のエラー。"""


class NegotiationInProgressError(RegistryError):
    """同一サーバーに対するネゴシエーションが既に実行中の場合のエラー。"""


def _generate_server_id() -> str:
    return f"mcp-{int(time.time() * 1000)}-{uuid4().hex[:9]}"


class ServerRegistry:
    """
    MCP サーバー一覧と接続状態を所有する唯一の書き込み主体。

    - 永続化は JSON ドキュメント 1 件を丸ごと読み書きする
    - 同一 server_id のネゴシエーションは同時に 1 件まで（重複は拒否）
    - 接続状態はレコードのみが保持し、is_connected 等はそこから導出する
    """

    def __init__(
        self,
        store: Optional[JsonStateStore] = None,
        negotiator: Optional[McpNegotiator] = None,
        *,
        storage_key: Optional[str] = None,
    ) -> None:
        self._store = store or JsonStateStore()
        self._negotiator = negotiator or McpNegotiator()
        self._storage_key = storage_key or settings.servers_storage_key
        self._in_flight: Set[str] = set()

    async def list_servers(self) -> List[ServerRecord]:
        """登録済みサーバーを全件取得する。"""
        return self._load_servers()

    async def get_server(self, server_id: str) -> Optional[ServerRecord]:
        """server_id からサーバーを取得する。存在しない場合は None。"""
        for server in self._load_servers():
            if server.id == server_id:
                return server
        return None

    async def add_server(
        self,
        *,
        name: str,
        url: str,
        description: str = "",
        transport: TransportKind = TransportKind.HTTP,
    ) -> ServerRecord:
        """サーバーを登録する。初期状態は disconnected。"""
        name_norm = (name or "").strip()
        url_norm = (url or "").strip()
        if not name_norm or not url_norm:
            raise RegistryError("name と url は必須です")

        server = ServerRecord(
            id=_generate_server_id(),
            name=name_norm,
            description=(description or "").strip(),
            url=url_norm,
            transport=transport,
        )
        servers = self._load_servers()
        servers.append(server)
        self._save_servers(servers)
        logger.info("Registered MCP server %s (%s)", server.id, server.url)
        return server

    async def update_server(
        self,
        server_id: str,
        *,
        name: Optional[str] = None,
        url: Optional[str] = None,
        description: Optional[str] = None,
        transport: Optional[TransportKind] = None,
    ) -> ServerRecord:
        """
        登録内容を編集する。

        url または transport が変わった場合は過去のネゴシエーション結果が無効になるため、
        状態を disconnected に戻し serverInfo/capabilities を破棄する。
        """
        self._ensure_not_negotiating(server_id)
        server = await self._require_server(server_id)

        updates: dict[str, object] = {}
        if name is not None and name.strip():
            updates["name"] = name.strip()
        if description is not None:
            updates["description"] = description.strip()
        endpoint_changed = False
        if url is not None and url.strip() and url.strip() != server.url:
            updates["url"] = url.strip()
            endpoint_changed = True
        if transport is not None and transport != server.transport:
            updates["transport"] = transport
            endpoint_changed = True
        if endpoint_changed:
            updates.update(
                status=ServerStatus.DISCONNECTED,
                capabilities=None,
                server_info=None,
                error_message=None,
            )

        return self._replace(server, updates)

    async def delete_server(self, server_id: str) -> None:
        """サーバーを削除する。存在しない場合は例外。"""
        self._ensure_not_negotiating(server_id)
        await self._require_server(server_id)
        servers = [s for s in self._load_servers() if s.id != server_id]
        self._save_servers(servers)
        logger.info("Deleted MCP server %s", server_id)

    async def set_status(
        self,
        server_id: str,
        status: ServerStatus,
        *,
        capabilities: object = _UNSET,
        server_info: object = _UNSET,
        error_message: object = _UNSET,
    ) -> ServerRecord:
        """
        ステータスと付随情報を更新する。

        last_connected_at は connected への遷移時にのみ更新する。
        """
        server = await self._require_server(server_id)

        updates: dict[str, object] = {"status": status}
        if status == ServerStatus.CONNECTED and server.status != ServerStatus.CONNECTED:
            updates["last_connected_at"] = datetime.now(timezone.utc)
        if capabilities is not _UNSET:
            updates["capabilities"] = capabilities
        if server_info is not _UNSET:
            updates["server_info"] = server_info
        if error_message is not _UNSET:
            updates["error_message"] = error_message

        return self._replace(server, updates)

    async def connect(self, server_id: str) -> Tuple[ServerRecord, NegotiationOutcome]:
        """
        登録済みサーバーとネゴシエーションし、結果をレコードへ反映する。

        Raises:
            ServerNotFoundError: 未登録の server_id の場合
            NegotiationInProgressError: 同一サーバーのネゴシエーションが実行中の場合
        """
        server = await self._require_server(server_id)
        return await self.negotiate(server_id, server.url, server.transport)

    async def negotiate(
        self,
        server_id: str,
        url: str,
        transport: TransportKind = TransportKind.HTTP,
    ) -> Tuple[Optional[ServerRecord], NegotiationOutcome]:
        """
        server_id 単位で直列化したネゴシエーションを実行する。

        server_id が登録済みで url・transport がレコードと一致する場合のみ、
        connecting を経由して結果をレコードへ反映する。未登録の場合や
        別の接続先を指定された場合は結果のみを返す（レコードは None）。
        """
        self._ensure_not_negotiating(server_id)
        self._in_flight.add(server_id)
        try:
            server = await self.get_server(server_id)
            registered = (
                server is not None
                and server.url == url
                and server.transport == TransportKind(transport)
            )
            if server is not None and not registered:
                logger.info(
                    "Negotiating %s for server %s without updating its record (endpoint differs)",
                    url,
                    server_id,
                )
            if registered:
                await self.set_status(server_id, ServerStatus.CONNECTING)

            outcome = await self._negotiator.negotiate(url, transport)

            if not registered:
                return None, outcome
            # ネゴシエーション中に削除された場合は結果だけを返す
            if await self.get_server(server_id) is None:
                logger.info("Server %s was removed during negotiation", server_id)
                return None, outcome
            return await self._apply_outcome(server_id, outcome), outcome
        finally:
            self._in_flight.discard(server_id)

    async def disconnect(self, server_id: str) -> ServerRecord:
        """接続状態を disconnected に戻す。"""
        self._ensure_not_negotiating(server_id)
        updated = await self.set_status(
            server_id, ServerStatus.DISCONNECTED, error_message=None
        )
        logger.info("Disconnected MCP server %s", server_id)
        return updated

    def is_negotiating(self, server_id: str) -> bool:
        return server_id in self._in_flight

    async def is_connected(self, server_id: str) -> bool:
        server = await self.get_server(server_id)
        return server is not None and server.status == ServerStatus.CONNECTED

    async def connected_server_ids(self) -> List[str]:
        return [s.id for s in self._load_servers() if s.status == ServerStatus.CONNECTED]

    async def _apply_outcome(
        self, server_id: str, outcome: NegotiationOutcome
    ) -> ServerRecord:
        """ネゴシエーション結果をステータスへ写像する。到達できれば connected。"""
        if not outcome.reachable:
            return await self.set_status(
                server_id,
                ServerStatus.ERROR,
                error_message=outcome.failure.message if outcome.failure else None,
            )

        server_info = None
        if outcome.server_info is not None:
            server_info = ServerInfo(
                name=outcome.server_info.name,
                version=outcome.server_info.version,
                description=outcome.server_info.description,
                mcp_supported=outcome.mcp_supported,
            )
        capabilities = outcome.capabilities
        if capabilities is None and not outcome.mcp_supported:
            # MCP 非対応サーバーは何も提供しない
            capabilities = ServerCapabilities()
        return await self.set_status(
            server_id,
            ServerStatus.CONNECTED,
            capabilities=capabilities,
            server_info=server_info,
            error_message=None,
        )

    def _ensure_not_negotiating(self, server_id: str) -> None:
        if server_id in self._in_flight:
            raise NegotiationInProgressError(
                f"Negotiation for server {server_id} is already in progress"
            )

    async def _require_server(self, server_id: str) -> ServerRecord:
        """存在確認付きでサーバーを取得する。"""
        server = await self.get_server(server_id)
        if server is None:
            raise ServerNotFoundError(f"Server not found: {server_id}")
        return server

    def _replace(self, server: ServerRecord, updates: dict) -> ServerRecord:
        """レコードを差し替えて一覧全体を書き直す。"""
        updates = {**updates, "updated_at": datetime.now(timezone.utc)}
        updated = server.model_copy(update=updates)
        servers = [updated if s.id == server.id else s for s in self._load_servers()]
        self._save_servers(servers)
        return updated

    def _load_servers(self) -> List[ServerRecord]:
        document = self._store.load(self._storage_key)
        if not isinstance(document, dict):
            return []

        servers: List[ServerRecord] = []
        for raw in document.get("servers") or []:
            try:
                server = ServerRecord.model_validate(raw)
            except ValidationError:
                logger.warning("Skipping invalid server record: %r", raw, exc_info=True)
                continue
            # 前回プロセスで中断された connecting は実行中でなければ disconnected とみなす
            if server.status == ServerStatus.CONNECTING and server.id not in self._in_flight:
                server = server.model_copy(update={"status": ServerStatus.DISCONNECTED})
            servers.append(server)
        return servers

    def _save_servers(self, servers: List[ServerRecord]) -> None:
        self._store.save(
            self._storage_key,
            {"servers": [s.model_dump(mode="json", by_alias=True) for s in servers]},
        )
