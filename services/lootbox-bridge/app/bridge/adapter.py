# services/lootbox-bridge/app/bridge/adapter.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from mcp import types
from mcp.server.lowlevel import Server

from app.bridge.connection import ConnectionManager
from app.bridge.discovery import SchemaExtractor
from app.bridge.errors import BridgeError, InvalidToolNameError
from app.config import settings
from app.models.procedure_models import RemoteProcedureDescriptor

logger = logging.getLogger("app.bridge.adapter")

TOOL_SEPARATOR = "__"


# --------- Naming ----------------------------------------------------------- #

def composite_name(procedure: RemoteProcedureDescriptor) -> str:
    return f"{procedure.namespace}{TOOL_SEPARATOR}{procedure.name}"


def split_composite_name(name: str, *, legacy_prefix: Optional[str] = None) -> Tuple[str, str]:
    """
    "basic_memory__write_memory" -> ("basic_memory", "write_memory").
    Splits on the first separator only; a legacy prefix is stripped first.
    """
    bare = name
    if legacy_prefix and bare.startswith(legacy_prefix):
        bare = bare[len(legacy_prefix):]
    namespace, sep, procedure = bare.partition(TOOL_SEPARATOR)
    if not sep or not namespace or not procedure:
        raise InvalidToolNameError(name=name)
    return namespace, procedure


def procedure_to_tool(procedure: RemoteProcedureDescriptor) -> types.Tool:
    input_schema: Dict[str, Any] = {
        "type": "object",
        "properties": {pname: spec.json_schema() for pname, spec in procedure.parameters.items()},
    }
    required = procedure.required
    if required:
        input_schema["required"] = required
    return types.Tool(
        name=composite_name(procedure),
        description=f"Call {procedure.method}() on the lootbox RPC server",
        inputSchema=input_schema,
    )


def _text_result(text: str, *, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


# --------- Adapter ---------------------------------------------------------- #

class LootboxToolAdapter:
    """
    MCP-facing side of the bridge. Neither operation raises to the front-end:
    listing degrades to no tools, calls come back as isError results.
    """

    def __init__(
        self,
        extractor: SchemaExtractor,
        connection: ConnectionManager,
        *,
        legacy_prefix: Optional[str] = None,
    ) -> None:
        self.extractor = extractor
        self.connection = connection
        self.legacy_prefix = legacy_prefix if legacy_prefix is not None else settings.legacy_tool_prefix

    async def list_tools(self) -> List[types.Tool]:
        try:
            procedures = await self.extractor.fetch_procedures()
        except BridgeError as exc:
            logger.error("Tool discovery failed [%s]: %s", exc.kind, exc)
            return []
        except Exception:
            logger.exception("Tool discovery failed unexpectedly")
            return []
        return [procedure_to_tool(p) for p in procedures]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> types.CallToolResult:
        try:
            namespace, procedure = split_composite_name(name, legacy_prefix=self.legacy_prefix)
        except InvalidToolNameError as exc:
            logger.warning("%s", exc)
            return _text_result(f"Error: {exc}", is_error=True)

        try:
            result = await self.connection.call(namespace, procedure, arguments or {})
        except BridgeError as exc:
            logger.warning("Call %s.%s failed [%s]: %s", namespace, procedure, exc.kind, exc)
            return _text_result(f"Error: {exc}", is_error=True)
        except Exception as exc:
            logger.exception("Call %s.%s failed unexpectedly", namespace, procedure)
            return _text_result(f"Error: {exc}", is_error=True)

        return _text_result(json.dumps(result, indent=2, ensure_ascii=False, default=str))


# --------- MCP server assembly ---------------------------------------------- #

def create_bridge_server(adapter: LootboxToolAdapter, *, name: Optional[str] = None) -> Server:
    server: Server = Server(name or settings.service_name, version=settings.service_version)

    @server.list_tools()
    async def handle_list_tools() -> List[types.Tool]:
        return await adapter.list_tools()

    # Registered directly so the adapter's CallToolResult (and its isError flag)
    # reaches the front-end unchanged.
    async def handle_call_tool(req: types.CallToolRequest) -> types.ServerResult:
        result = await adapter.call_tool(req.params.name, req.params.arguments)
        return types.ServerResult(result)

    server.request_handlers[types.CallToolRequest] = handle_call_tool
    return server
