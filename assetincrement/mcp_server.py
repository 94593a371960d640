"""Model Context Protocol front end for asset-increment.

Lets an AI agent drive the same orchestrator the CLI uses, over stdio.

Tools:
- asset_backup: Back up one asset now
- asset_restore: Restore an asset version beside the asset
- asset_history: Versions, increments and earlier paths of an asset
- asset_renamed: Keep history attached after an asset was renamed
- engine_status: Whether the configured engine is usable
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from assetincrement.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
)
from assetincrement.engine import BackupOptions
from assetincrement.logger import LoggingError, setup_logging
from assetincrement.orchestrator import BackupOrchestrator


PATH_SCHEMA = {
    "type": "string",
    "description": "Asset path, absolute or relative to the vault root",
}


def _object_schema(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


TOOLS = [
    Tool(
        name="asset_backup",
        description="Back up one asset file now. Returns the assigned version (e.g. v004) and backup statistics.",
        inputSchema=_object_schema(
            {
                "path": PATH_SCHEMA,
                "force": {
                    "type": "boolean",
                    "description": "Back up even if the asset was backed up moments ago",
                },
                "compression": {
                    "type": "boolean",
                    "description": "Force engine compression on or off (default: by file size)",
                },
                "tag": {"type": "string", "description": "Tag for snapshot-engine backups"},
            },
            ["path"],
        ),
    ),
    Tool(
        name="asset_restore",
        description="Restore a backed-up version of an asset to a separate file (default <asset>.restored). The asset itself is never overwritten.",
        inputSchema=_object_schema(
            {
                "path": PATH_SCHEMA,
                "selector": {
                    "type": "string",
                    "description": "Increment timestamp or snapshot id (default: latest)",
                },
                "destination": {"type": "string", "description": "File to restore to"},
                "force": {
                    "type": "boolean",
                    "description": "Overwrite an existing destination file",
                },
            },
            ["path"],
        ),
    ),
    Tool(
        name="asset_history",
        description="List an asset's versions, engine increments, repository statistics and earlier paths.",
        inputSchema=_object_schema({"path": PATH_SCHEMA}, ["path"]),
    ),
    Tool(
        name="asset_renamed",
        description="Report that an asset file was renamed or moved so its backup history follows it.",
        inputSchema=_object_schema(
            {"old_path": PATH_SCHEMA, "new_path": PATH_SCHEMA},
            ["old_path", "new_path"],
        ),
    ),
    Tool(
        name="engine_status",
        description="Show the configured backup engine, whether it is available, and the storage mode.",
        inputSchema=_object_schema({}, []),
    ),
]


class AssetIncrementMCPServer:
    """
    Serves the asset tools over MCP.

    Every tool answers with JSON text; failures look like
    {"error": {"code": ..., "message": ...}}. All calls share one
    orchestrator, so two agents backing up the same asset queue on its
    lock exactly as two CLI threads would.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Configuration] = None,
        orchestrator: Optional[BackupOrchestrator] = None,
    ):
        # The configuration is read lazily so a broken file surfaces as a
        # CONFIG_ERROR tool result instead of killing the server.
        self.config_path = config_path
        self._config = config
        self._orchestrator = orchestrator
        self.server = Server("asset-increment")
        self._register_tools()

    def _load_config(self) -> Configuration:
        if self._config is None:
            self._config = parse_config(self.config_path)
        return self._config

    def _get_orchestrator(self) -> BackupOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = BackupOrchestrator(self._load_config())
        return self._orchestrator

    def _orchestrator_or_error(self) -> Tuple[Optional[BackupOrchestrator], Optional[str]]:
        try:
            return self._get_orchestrator(), None
        except (ConfigurationError, ValidationError) as e:
            return None, self._error_response("CONFIG_ERROR", str(e))

    @staticmethod
    async def _offload(func: Callable[[], Any]) -> Any:
        # Engine processes block; keep the stdio loop serving
        return await asyncio.get_running_loop().run_in_executor(None, func)

    def _error_response(self, code: str, message: str) -> str:
        return json.dumps({"error": {"code": code, "message": message}}, indent=2)

    def _success_response(self, data: Dict[str, Any]) -> str:
        return json.dumps(data, indent=2, default=str)

    def _register_tools(self):
        handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "asset_backup": lambda a: self._tool_asset_backup(
                path=a.get("path", ""),
                force=a.get("force", False),
                compression=a.get("compression"),
                tag=a.get("tag", ""),
            ),
            "asset_restore": lambda a: self._tool_asset_restore(
                path=a.get("path", ""),
                selector=a.get("selector"),
                destination=a.get("destination"),
                force=a.get("force", False),
            ),
            "asset_history": lambda a: self._tool_asset_history(path=a.get("path", "")),
            "asset_renamed": lambda a: self._tool_asset_renamed(
                old_path=a.get("old_path", ""),
                new_path=a.get("new_path", ""),
            ),
            "engine_status": lambda a: self._tool_engine_status(),
        }

        @self.server.list_tools()
        async def list_tools() -> List[Tool]:
            return TOOLS

        @self.server.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
            handler = handlers.get(name)
            if handler is None:
                text = self._error_response("UNKNOWN_TOOL", f"Unknown tool: {name}")
            else:
                try:
                    text = await handler(arguments or {})
                except Exception as e:
                    text = self._error_response("INTERNAL_ERROR", str(e))
            return [TextContent(type="text", text=text)]

    async def _tool_asset_backup(
        self,
        path: str,
        force: bool = False,
        compression: Optional[bool] = None,
        tag: str = "",
    ) -> str:
        """
        Back up one asset.

        A recent backup of the same asset yields success=false with
        skipped=true rather than an error object.
        """
        if not path:
            return self._error_response("INVALID_ARGUMENT", "path is required")
        orchestrator, error = self._orchestrator_or_error()
        if error:
            return error

        options = BackupOptions(compression=compression, tag=tag, force=force)
        result = await self._offload(lambda: orchestrator.backup(path, options))

        if result.success or result.skipped:
            return self._success_response(result.to_dict())
        available = await self._offload(orchestrator.is_available)
        code = "BACKUP_FAILED" if available else "ENGINE_UNAVAILABLE"
        return self._error_response(code, result.error or "Unknown error")

    async def _tool_asset_restore(
        self,
        path: str,
        selector: Optional[str] = None,
        destination: Optional[str] = None,
        force: bool = False,
    ) -> str:
        if not path:
            return self._error_response("INVALID_ARGUMENT", "path is required")
        orchestrator, error = self._orchestrator_or_error()
        if error:
            return error

        target = Path(destination).expanduser() if destination else None
        result = await self._offload(
            lambda: orchestrator.restore(path, selector=selector, target=target, force=force)
        )
        if not result.success:
            return self._error_response("RESTORE_FAILED", result.error or "Unknown error")
        return self._success_response(result.to_dict())

    async def _tool_asset_history(self, path: str) -> str:
        if not path:
            return self._error_response("INVALID_ARGUMENT", "path is required")
        orchestrator, error = self._orchestrator_or_error()
        if error:
            return error

        history = await self._offload(lambda: orchestrator.history(path))
        if history.error:
            return self._error_response("HISTORY_FAILED", history.error)
        return self._success_response(history.to_dict())

    async def _tool_asset_renamed(self, old_path: str, new_path: str) -> str:
        """Carry the repository (and version store) over to new_path."""
        if not old_path or not new_path:
            return self._error_response("INVALID_ARGUMENT", "old_path and new_path are required")
        orchestrator, error = self._orchestrator_or_error()
        if error:
            return error

        result = await self._offload(lambda: orchestrator.on_asset_renamed(old_path, new_path))
        if not result.success:
            return self._error_response("RELOCATION_FAILED", result.error or "Unknown error")
        return self._success_response(result.to_dict())

    async def _tool_engine_status(self) -> str:
        orchestrator, error = self._orchestrator_or_error()
        if error:
            return error

        config = orchestrator.config
        available = await self._offload(orchestrator.is_available)
        return self._success_response({
            "engine": config.engine,
            "engine_path": config.engine_path,
            "available": available,
            "storage_mode": config.storage_mode,
            "vault_root": str(config.vault_root),
            "global_backup_root": str(config.effective_global_root),
        })

    async def run(self):
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options(),
            )


def run_server(config_path: Optional[Path] = None):
    """Serve MCP on stdio until the client disconnects (`asset-increment mcp-server`)."""
    server = AssetIncrementMCPServer(config_path=config_path)
    try:
        # stdout carries the protocol; log to files only
        setup_logging(server._load_config().logging, console=False)
    except (ConfigurationError, ValidationError, LoggingError):
        # Tools report configuration errors per call
        pass
    asyncio.run(server.run())
