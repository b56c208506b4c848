"""Authenticated MCP endpoint bound to protocol sessions."""

import logging
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, Response

from ..models.oauth import JsonRpcErrorResponse
from ..models.state import AuthInfo
from ..services.errors import InvalidTokenError, SessionNotFoundError, StoreUnavailableError
from ..services.instances import LiveInstance, McpInstanceManager
from ..services.registry import ProviderRegistry
from ..services.transport import (
    PARSE_ERROR,
    SERVER_ERROR,
    SESSION_NOT_FOUND,
    jsonrpc_error,
)
from .deps import bearer_token, get_manager, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["mcp"],
    responses={
        401: {"model": JsonRpcErrorResponse},
        404: {"model": JsonRpcErrorResponse},
        503: {"model": JsonRpcErrorResponse},
    },
)

MCP_SESSION_HEADER = "mcp-session-id"

RegistryDep = Annotated[ProviderRegistry, Depends(get_registry)]
ManagerDep = Annotated[McpInstanceManager, Depends(get_manager)]


class _Rejected(Exception):
    def __init__(self, response: JSONResponse) -> None:
        super().__init__(response.status_code)
        self.response = response


def _rpc_error(
    status_code: int,
    code: int,
    message: str,
    request_id: Any = None,
    session_id: Optional[str] = None,
) -> JSONResponse:
    headers = {MCP_SESSION_HEADER: session_id} if session_id else None
    return JSONResponse(
        status_code=status_code,
        content=jsonrpc_error(code, message, request_id),
        headers=headers,
    )


async def _authenticate(request: Request, registry: ProviderRegistry) -> AuthInfo:
    token = bearer_token(request.headers.get("authorization"))
    if token is None:
        raise _Rejected(
            _rpc_error(status.HTTP_401_UNAUTHORIZED, SERVER_ERROR, "Unauthorized: missing bearer token")
        )
    try:
        return await registry.verify_access_token(token)
    except InvalidTokenError:
        raise _Rejected(
            _rpc_error(
                status.HTTP_401_UNAUTHORIZED, SERVER_ERROR, "Unauthorized: invalid or expired token"
            )
        ) from None


async def _resolve_instance(manager: McpInstanceManager, session_id: str) -> LiveInstance:
    try:
        return await manager.get_or_recreate_instance(session_id)
    except SessionNotFoundError:
        raise _Rejected(
            _rpc_error(status.HTTP_404_NOT_FOUND, SESSION_NOT_FOUND, "Session not found")
        ) from None
    except StoreUnavailableError:
        raise _Rejected(
            _rpc_error(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                SERVER_ERROR,
                "Session store unavailable, retry the request",
                session_id=session_id,
            )
        ) from None


def _check_origin(request: Request, instance: LiveInstance) -> None:
    rejection = instance.transport.validate_request(
        request.headers.get("host"), request.headers.get("origin")
    )
    if rejection:
        raise _Rejected(_rpc_error(status.HTTP_403_FORBIDDEN, SERVER_ERROR, rejection))


def _is_initialize(messages: List[Any]) -> bool:
    return any(isinstance(m, dict) and m.get("method") == "initialize" for m in messages)


@router.post("/mcp")
async def handle_mcp_post(
    request: Request, registry: RegistryDep, manager: ManagerDep
) -> Response:
    """Route JSON-RPC messages to the live instance for the session."""
    try:
        auth_info = await _authenticate(request, registry)
        try:
            body = await request.json()
        except ValueError:
            return _rpc_error(status.HTTP_400_BAD_REQUEST, PARSE_ERROR, "Parse error")

        batch = isinstance(body, list)
        messages = body if batch else [body]
        session_id = request.headers.get(MCP_SESSION_HEADER)

        if session_id:
            instance = await _resolve_instance(manager, session_id)
            _check_origin(request, instance)
        elif _is_initialize(messages):
            instance = await manager.create_instance(auth_info=auth_info)
            try:
                _check_origin(request, instance)
            except _Rejected:
                await manager.delete_session(instance.session_id)
                raise
        else:
            return _rpc_error(
                status.HTTP_400_BAD_REQUEST,
                SERVER_ERROR,
                "Bad Request: No valid session ID provided",
            )
    except _Rejected as rejected:
        return rejected.response

    responses: List[Dict[str, Any]] = []
    for message in messages:
        reply = await instance.transport.handle_message(message)
        if reply is not None:
            responses.append(reply)

    headers = {MCP_SESSION_HEADER: instance.session_id}
    if not responses:
        return Response(status_code=status.HTTP_202_ACCEPTED, headers=headers)
    return JSONResponse(content=responses if batch else responses[0], headers=headers)


@router.delete("/mcp")
async def handle_mcp_delete(
    request: Request, registry: RegistryDep, manager: ManagerDep
) -> Response:
    """Close a session. The metadata goes with it."""
    try:
        await _authenticate(request, registry)
        session_id = request.headers.get(MCP_SESSION_HEADER)
        if not session_id:
            return _rpc_error(
                status.HTTP_400_BAD_REQUEST,
                SERVER_ERROR,
                "Bad Request: No valid session ID provided",
            )
        instance = await _resolve_instance(manager, session_id)
        _check_origin(request, instance)
    except _Rejected as rejected:
        return rejected.response

    await manager.delete_session(session_id)
    return Response(status_code=status.HTTP_200_OK, headers={MCP_SESSION_HEADER: session_id})
