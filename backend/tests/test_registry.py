"""ServerRegistry の基盤機能テスト。"""

import asyncio
import json

import pytest

from mcp_chat.models.negotiation import (
    FailureKind,
    NegotiatedServerInfo,
    NegotiationFailure,
    NegotiationOutcome,
    NegotiationState,
)
from mcp_chat.models.servers import ServerCapabilities, ServerStatus, TransportKind
from mcp_chat.services.registry import (
    NegotiationInProgressError,
    RegistryError,
    ServerNotFoundError,
    ServerRegistry,
)

from fakes import StubNegotiator

CONNECTED = NegotiationOutcome(
    state=NegotiationState.CONNECTED,
    reachable=True,
    mcp_supported=True,
    server_info=NegotiatedServerInfo(name="Weather", version="2.1"),
    capabilities=ServerCapabilities(tools=True),
)
NON_MCP = NegotiationOutcome(
    state=NegotiationState.NON_MCP_REACHABLE, reachable=True, mcp_supported=False
)
UNREACHABLE = NegotiationOutcome(
    state=NegotiationState.UNREACHABLE,
    reachable=False,
    failure=NegotiationFailure(kind=FailureKind.NETWORK_ERROR, message="Network error"),
)


def _make_registry(json_store, outcome: NegotiationOutcome = CONNECTED, **kwargs):
    negotiator = StubNegotiator(outcome, **kwargs)
    return ServerRegistry(json_store, negotiator), negotiator


@pytest.mark.asyncio
async def test_add_and_get_server(json_store) -> None:
    """登録したサーバーが disconnected で取得できること。"""
    registry, _ = _make_registry(json_store)

    server = await registry.add_server(
        name=" Weather ", url=" https://example.test/mcp ", description="forecast"
    )

    assert server.id.startswith("mcp-")
    assert server.name == "Weather"
    assert server.url == "https://example.test/mcp"
    assert server.status == ServerStatus.DISCONNECTED
    assert server.transport == TransportKind.HTTP
    fetched = await registry.get_server(server.id)
    assert fetched == server


@pytest.mark.asyncio
async def test_add_server_requires_name_and_url(json_store) -> None:
    """name と url が空なら登録できないこと。"""
    registry, _ = _make_registry(json_store)

    with pytest.raises(RegistryError):
        await registry.add_server(name="  ", url="https://example.test")


@pytest.mark.asyncio
async def test_servers_are_persisted_as_one_document(json_store) -> None:
    """一覧は camelCase の JSON ドキュメント 1 件として保存されること。"""
    registry, _ = _make_registry(json_store)
    await registry.add_server(name="A", url="https://a.example.test")
    await registry.add_server(name="B", url="https://b.example.test")

    raw = json.loads((json_store.data_dir / "mcp-servers.json").read_text(encoding="utf-8"))

    assert [s["name"] for s in raw["servers"]] == ["A", "B"]
    assert {"createdAt", "updatedAt", "status"}.issubset(raw["servers"][0])

    reloaded = ServerRegistry(json_store, StubNegotiator(CONNECTED))
    assert [s.name for s in await reloaded.list_servers()] == ["A", "B"]


@pytest.mark.asyncio
async def test_connect_records_server_info(json_store) -> None:
    """MCP 対応サーバーへの接続で serverInfo と capabilities が保存されること。"""
    registry, negotiator = _make_registry(json_store, CONNECTED)
    server = await registry.add_server(
        name="Weather", url="https://example.test/mcp", transport=TransportKind.SSE
    )

    updated, outcome = await registry.connect(server.id)

    assert outcome is CONNECTED
    assert negotiator.calls == [("https://example.test/mcp", TransportKind.SSE)]
    assert updated.status == ServerStatus.CONNECTED
    assert updated.last_connected_at is not None
    assert updated.server_info.name == "Weather"
    assert updated.server_info.mcp_supported is True
    assert updated.capabilities.tools is True
    assert await registry.is_connected(server.id)
    assert await registry.connected_server_ids() == [server.id]


@pytest.mark.asyncio
async def test_non_mcp_server_is_connected_without_protocol(json_store) -> None:
    """到達可能だが MCP 非対応のサーバーも connected になること。"""
    registry, _ = _make_registry(json_store, NON_MCP)
    server = await registry.add_server(name="Plain", url="https://plain.example.test")

    updated, _ = await registry.connect(server.id)

    assert updated.status == ServerStatus.CONNECTED
    assert updated.server_info is None
    assert updated.capabilities == ServerCapabilities()


@pytest.mark.asyncio
async def test_unreachable_server_is_error(json_store) -> None:
    """到達不可の場合は error となり、最終接続時刻は更新されないこと。"""
    registry, _ = _make_registry(json_store, UNREACHABLE)
    server = await registry.add_server(name="Down", url="https://down.example.test")

    updated, _ = await registry.connect(server.id)

    assert updated.status == ServerStatus.ERROR
    assert updated.error_message == "Network error"
    assert updated.last_connected_at is None


@pytest.mark.asyncio
async def test_last_connected_only_changes_on_transition(json_store) -> None:
    """connected のまま状態を更新しても最終接続時刻は変わらないこと。"""
    registry, _ = _make_registry(json_store)
    server = await registry.add_server(name="A", url="https://a.example.test")
    connected = await registry.set_status(server.id, ServerStatus.CONNECTED)

    again = await registry.set_status(server.id, ServerStatus.CONNECTED, error_message=None)

    assert again.last_connected_at == connected.last_connected_at


@pytest.mark.asyncio
async def test_concurrent_connect_is_rejected(json_store) -> None:
    """同一サーバーへのネゴシエーション中の再接続は拒否されること。"""
    release = asyncio.Event()
    registry, negotiator = _make_registry(json_store, CONNECTED, release=release)
    server = await registry.add_server(name="Slow", url="https://slow.example.test")

    first = asyncio.create_task(registry.connect(server.id))
    await negotiator.started.wait()

    in_flight = await registry.get_server(server.id)
    assert in_flight.status == ServerStatus.CONNECTING
    assert registry.is_negotiating(server.id)
    with pytest.raises(NegotiationInProgressError):
        await registry.connect(server.id)
    with pytest.raises(NegotiationInProgressError):
        await registry.disconnect(server.id)

    release.set()
    updated, _ = await first

    assert updated.status == ServerStatus.CONNECTED
    assert len(negotiator.calls) == 1
    assert not registry.is_negotiating(server.id)


@pytest.mark.asyncio
async def test_different_servers_negotiate_independently(json_store) -> None:
    """別サーバーのネゴシエーションは互いに妨げないこと。"""
    release = asyncio.Event()
    registry, negotiator = _make_registry(json_store, CONNECTED, release=release)
    a = await registry.add_server(name="A", url="https://a.example.test")
    b = await registry.add_server(name="B", url="https://b.example.test")

    tasks = [asyncio.create_task(registry.connect(a.id)), asyncio.create_task(registry.connect(b.id))]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks)

    assert [record.status for record, _ in results] == [ServerStatus.CONNECTED] * 2
    assert len(negotiator.calls) == 2


@pytest.mark.asyncio
async def test_negotiate_unregistered_id_does_not_persist(json_store) -> None:
    """未登録の serverId でのネゴシエーションは結果のみを返すこと。"""
    registry, _ = _make_registry(json_store)

    record, outcome = await registry.negotiate("adhoc-1", "https://example.test/mcp")

    assert record is None
    assert outcome.reachable is True
    assert await registry.list_servers() == []


@pytest.mark.asyncio
async def test_stale_connecting_status_is_reset_on_load(json_store) -> None:
    """前回プロセスで残った connecting は disconnected として読み込まれること。"""
    registry, _ = _make_registry(json_store)
    server = await registry.add_server(name="A", url="https://a.example.test")
    await registry.set_status(server.id, ServerStatus.CONNECTING)

    reloaded = ServerRegistry(json_store, StubNegotiator(CONNECTED))

    assert (await reloaded.get_server(server.id)).status == ServerStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect(json_store) -> None:
    """切断で disconnected に戻り、最終接続時刻は保持されること。"""
    registry, _ = _make_registry(json_store)
    server = await registry.add_server(name="A", url="https://a.example.test")
    connected, _ = await registry.connect(server.id)

    disconnected = await registry.disconnect(server.id)

    assert disconnected.status == ServerStatus.DISCONNECTED
    assert disconnected.last_connected_at == connected.last_connected_at
    assert await registry.connected_server_ids() == []


@pytest.mark.asyncio
async def test_update_endpoint_invalidates_negotiated_state(json_store) -> None:
    """URL の変更でネゴシエーション結果が破棄されること。"""
    registry, _ = _make_registry(json_store)
    server = await registry.add_server(name="A", url="https://a.example.test")
    await registry.connect(server.id)

    renamed = await registry.update_server(server.id, name="Renamed")
    assert renamed.status == ServerStatus.CONNECTED

    moved = await registry.update_server(server.id, url="https://b.example.test")

    assert moved.url == "https://b.example.test"
    assert moved.status == ServerStatus.DISCONNECTED
    assert moved.server_info is None
    assert moved.capabilities is None
    assert moved.id == server.id


@pytest.mark.asyncio
async def test_delete_server(json_store) -> None:
    """削除後は取得できず、再削除は例外になること。"""
    registry, _ = _make_registry(json_store)
    server = await registry.add_server(name="A", url="https://a.example.test")

    await registry.delete_server(server.id)

    assert await registry.get_server(server.id) is None
    with pytest.raises(ServerNotFoundError):
        await registry.delete_server(server.id)


@pytest.mark.asyncio
async def test_connect_unknown_server_raises(json_store) -> None:
    """未登録のサーバーへの接続は ServerNotFoundError になること。"""
    registry, negotiator = _make_registry(json_store)

    with pytest.raises(ServerNotFoundError):
        await registry.connect("missing")
    assert negotiator.calls == []


@pytest.mark.asyncio
async def test_negotiate_other_endpoint_does_not_touch_record(json_store) -> None:
    """登録内容と異なる URL・transport の結果はレコードへ反映されないこと。"""
    registry, negotiator = _make_registry(json_store, CONNECTED)
    server = await registry.add_server(name="Down", url="http://down.example/mcp")

    record, outcome = await registry.negotiate(server.id, "http://up.example/mcp")
    same_url, _ = await registry.negotiate(
        server.id, "http://down.example/mcp", TransportKind.SSE
    )

    assert record is None
    assert same_url is None
    assert outcome.reachable is True
    assert negotiator.calls[0] == ("http://up.example/mcp", TransportKind.HTTP)
    stored = await registry.get_server(server.id)
    assert stored.status == ServerStatus.DISCONNECTED
    assert stored.server_info is None
    assert stored.last_connected_at is None
