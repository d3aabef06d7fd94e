"""MCP サーバーの登録・接続 API。"""

import logging

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from ..models.negotiation import (
    ConnectRequest,
    ConnectResponse,
    DisconnectRequest,
    NegotiationOutcome,
)
from ..models.servers import ServerCreateRequest, ServerRecord, ServerUpdateRequest
from ..services.registry import (
    NegotiationInProgressError,
    RegistryError,
    ServerRegistry,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mcp", tags=["mcp"])
registry = ServerRegistry()

CONNECT_FAILURE_DETAILS = (
    "Failed to connect to MCP server. Please check the URL and ensure the server is running."
)


def _error_response(*, status_code: int, error_code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error_code": error_code, "message": message},
    )


def _outcome_response(outcome: NegotiationOutcome) -> JSONResponse:
    """ネゴシエーション結果を {success, serverInfo?, error?, details?} へ変換する。"""
    if not outcome.reachable:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": outcome.failure.message if outcome.failure else "Connection failed",
                "errorKind": outcome.failure.kind.value if outcome.failure else None,
                "details": CONNECT_FAILURE_DETAILS,
            },
        )

    if outcome.mcp_supported:
        message = "MCP server connected successfully"
    else:
        message = "Server is reachable but does not speak MCP"
    body = ConnectResponse(
        message=message,
        mcp_supported=outcome.mcp_supported,
        server_info=outcome.server_info,
        capabilities=outcome.capabilities,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@router.post("/connect")
async def connect(body: ConnectRequest) -> JSONResponse:
    """URL に対してネゴシエーションを行う。登録済みの serverId ならレコードも更新する。"""
    server_id = (body.server_id or "").strip()
    url = (body.url or "").strip()
    if not server_id or not url:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Server ID and URL are required"},
        )

    try:
        _, outcome = await registry.negotiate(server_id, url, body.transport)
    except NegotiationInProgressError as exc:
        return _error_response(
            status_code=status.HTTP_409_CONFLICT,
            error_code="negotiation_in_progress",
            message=str(exc),
        )
    return _outcome_response(outcome)


@router.post("/disconnect")
async def disconnect(body: DisconnectRequest) -> JSONResponse:
    """接続状態を解除する。未登録の serverId は何もせず成功とする。"""
    server_id = (body.server_id or "").strip()
    if not server_id:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Server ID is required"},
        )

    try:
        if await registry.get_server(server_id) is not None:
            await registry.disconnect(server_id)
    except NegotiationInProgressError as exc:
        return _error_response(
            status_code=status.HTTP_409_CONFLICT,
            error_code="negotiation_in_progress",
            message=str(exc),
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"success": True, "message": "MCP server disconnected successfully"},
    )


@router.get("/servers", response_model=list[ServerRecord])
async def list_servers() -> list[ServerRecord]:
    """登録済みサーバーを一覧する。"""
    return await registry.list_servers()


@router.post("/servers", response_model=ServerRecord, status_code=status.HTTP_201_CREATED)
async def add_server(body: ServerCreateRequest) -> ServerRecord | JSONResponse:
    """サーバーを登録する。"""
    try:
        return await registry.add_server(
            name=body.name,
            url=body.url,
            description=body.description,
            transport=body.transport,
        )
    except RegistryError as exc:
        return _error_response(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="server_invalid",
            message=str(exc),
        )


@router.get("/servers/{server_id}", response_model=ServerRecord)
async def get_server(server_id: str) -> ServerRecord | JSONResponse:
    """server_id でサーバーを取得する。"""
    server = await registry.get_server(server_id)
    if server is None:
        return _error_response(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="server_not_found",
            message="指定されたサーバーが見つかりません。",
        )
    return server


@router.patch("/servers/{server_id}", response_model=ServerRecord)
async def update_server(
    server_id: str, body: ServerUpdateRequest
) -> ServerRecord:
    """サーバーの登録内容を編集する。"""
    return await registry.update_server(
        server_id,
        name=body.name,
        url=body.url,
        description=body.description,
        transport=body.transport,
    )


@router.delete(
    "/servers/{server_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
async def delete_server(server_id: str) -> Response:
    """サーバーを削除する。"""
    await registry.delete_server(server_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/servers/{server_id}/connect")
async def connect_server(server_id: str) -> JSONResponse:
    """登録済みサーバーとネゴシエーションし、結果をレコードへ反映する。"""
    _, outcome = await registry.connect(server_id)
    return _outcome_response(outcome)


@router.post("/servers/{server_id}/disconnect", response_model=ServerRecord)
async def disconnect_server(server_id: str) -> ServerRecord:
    """登録済みサーバーを disconnected に戻す。"""
    return await registry.disconnect(server_id)

