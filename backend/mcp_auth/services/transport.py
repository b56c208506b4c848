"""Session-bound JSON-RPC transport and a minimal MCP server.

The server answers just enough of the protocol (initialize, ping and
tools/list) to carry a session through creation and reconstruction.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..config import Settings, settings
from ..models.state import AuthInfo

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
DEFAULT_PROTOCOL_VERSION = "2025-03-26"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
SERVER_ERROR = -32000
SESSION_NOT_FOUND = -32001


class JsonRpcProtocolError(Exception):
    """Raised by a server handler to produce a JSON-RPC error response."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


def jsonrpc_error(code: int, message: str, request_id: Any = None) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "error": {"code": code, "message": message},
        "id": request_id,
    }


@dataclass
class TransportOptions:
    """Options handed unchanged to every transport, fresh or reconstructed."""

    enable_json_response: bool = True
    allowed_origins: List[str] = field(default_factory=list)
    allowed_hosts: List[str] = field(default_factory=list)
    enable_dns_rebinding_protection: Optional[bool] = None

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "TransportOptions":
        config = config or settings
        return cls(
            enable_json_response=config.mcp_enable_json_response,
            allowed_origins=config.mcp_allowed_origins_list,
            allowed_hosts=config.mcp_allowed_hosts_list,
            enable_dns_rebinding_protection=config.mcp_dns_rebinding_protection,
        )


class McpServer(Protocol):
    async def handle(self, method: str, params: Dict[str, Any], transport: "SessionTransport") -> Any: ...

    async def close(self) -> None: ...


class BasicMcpServer:
    """Answers the session handshake. Tool execution lives elsewhere."""

    def __init__(self, name: str = "mcp-auth-gateway", version: str = "0.1.0") -> None:
        self.name = name
        self.version = version
        self.closed = False

    async def handle(self, method: str, params: Dict[str, Any], transport: "SessionTransport") -> Any:
        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": self.name, "version": self.version},
            }
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": []}
        if method.startswith("notifications/"):
            return None
        raise JsonRpcProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def close(self) -> None:
        self.closed = True


ServerFactory = Callable[[], McpServer]


class SessionTransport:
    """Binds one protocol session id to one server instance."""

    def __init__(
        self,
        session_id: str,
        server: McpServer,
        options: Optional[TransportOptions] = None,
        *,
        auth_info: Optional[AuthInfo] = None,
    ) -> None:
        self.session_id = session_id
        self.server = server
        self.options = options or TransportOptions()
        self.auth_info = auth_info
        self.initialized = False
        self.closed = False

    @property
    def dns_rebinding_protection(self) -> bool:
        if self.options.enable_dns_rebinding_protection is not None:
            return self.options.enable_dns_rebinding_protection
        return bool(self.options.allowed_hosts or self.options.allowed_origins)

    def mark_initialized(self) -> None:
        """Skip the handshake for a session that was initialized elsewhere."""
        self.initialized = True

    def validate_request(self, host: Optional[str], origin: Optional[str]) -> Optional[str]:
        """Return a rejection message when Host/Origin fail DNS-rebinding checks."""
        if not self.dns_rebinding_protection:
            return None
        if self.options.allowed_hosts and host not in self.options.allowed_hosts:
            logger.warning("Rejected request for session %s: host %s", self.session_id[:8], host)
            return f"Invalid Host header: {host}"
        if origin and self.options.allowed_origins and origin not in self.options.allowed_origins:
            logger.warning("Rejected request for session %s: origin %s", self.session_id[:8], origin)
            return f"Invalid Origin header: {origin}"
        return None

    async def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """Dispatch one JSON-RPC message. Notifications produce no response."""
        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            return jsonrpc_error(INVALID_REQUEST, "Invalid Request")
        method = message.get("method")
        request_id = message.get("id")
        if not isinstance(method, str):
            return jsonrpc_error(INVALID_REQUEST, "Invalid Request", request_id)

        if method != "initialize" and not self.initialized:
            return jsonrpc_error(SERVER_ERROR, "Bad Request: Server not initialized", request_id)

        params = message.get("params") or {}
        try:
            result = await self.server.handle(method, params, self)
        except JsonRpcProtocolError as exc:
            return jsonrpc_error(exc.code, exc.message, request_id)

        if method == "initialize":
            self.initialized = True
        if "id" not in message:
            return None
        return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.server.close()
