from __future__ import annotations

import os
from typing import Iterator

import httpx
import pytest
from hypothesis import settings

from mcp_chat.api import chat as chat_api
from mcp_chat.api import mcp as mcp_api
from mcp_chat.services.chat_storage import ChatStorage
from mcp_chat.services.json_store import JsonStateStore
from mcp_chat.services.negotiator import McpNegotiator
from mcp_chat.services.probe import TransportProbe
from mcp_chat.services.registry import ServerRegistry

from fakes import mock_client_factory

_DEFAULT_MAX_EXAMPLES = int(os.getenv("HYPOTHESIS_MAX_EXAMPLES", "100"))

# CI/コンテナ環境では初回実行が遅くなることがあるため、デッドラインを無効化する
if "HYPOTHESIS_PROFILE" not in os.environ:
    try:
        settings.register_profile(
            "ci",
            settings(
                deadline=None,
                max_examples=_DEFAULT_MAX_EXAMPLES,
            ),
        )
    except ValueError:
        # プロファイルが既に存在する場合は無視して既定プロファイルを読み込む
        pass
    settings.load_profile("ci")


@pytest.fixture
def json_store(tmp_path) -> JsonStateStore:
    """一時ディレクトリに JSON ストアを作成する。"""
    return JsonStateStore(str(tmp_path / "data"))


@pytest.fixture(autouse=True)
def _isolated_registry(tmp_path, monkeypatch) -> Iterator[ServerRegistry]:
    """
    API モジュールのレジストリを一時ディレクトリのものへ差し替える。

    既定ではネットワークに出ないよう、すべてのリクエストを接続エラーにする。
    個別の挙動が必要な場合はテスト側で registry を差し替える。
    """

    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("All connection attempts failed", request=request)

    negotiator = McpNegotiator(
        TransportProbe(http_client_factory=mock_client_factory(_refuse))
    )
    registry = ServerRegistry(
        JsonStateStore(str(tmp_path / "api-data")), negotiator
    )
    monkeypatch.setattr(mcp_api, "registry", registry)
    yield registry


@pytest.fixture(autouse=True)
def _isolated_chat_storage(tmp_path, monkeypatch) -> Iterator[ChatStorage]:
    """チャット API の履歴保存先を一時ディレクトリへ差し替える。"""
    storage = ChatStorage(JsonStateStore(str(tmp_path / "chat-data")))
    monkeypatch.setattr(chat_api, "chat_storage", storage)
    yield storage
