"""devjournal MCP server - exposes the journal to AI assistants over stdio."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

# MCP imports are optional - only needed when running the server
try:
    from mcp.server import Server  # pragma: no cover
    from mcp.server.stdio import stdio_server  # pragma: no cover
    from mcp.types import Tool, TextContent  # pragma: no cover
    HAS_MCP = True  # pragma: no cover
except ImportError:
    HAS_MCP = False
    Server = None  # type: ignore
    Tool = None  # type: ignore
    TextContent = None  # type: ignore

from .config import JournalConfig, load_config
from .engine import JournalEngine
from .tools import execute_tool, make_tools

logger = logging.getLogger(__name__)


def create_server(engine: JournalEngine) -> "Server":
    """Create and configure the MCP server.

    Args:
        engine: Engine the tools operate on

    Returns:
        Configured MCP Server instance

    Raises:
        ImportError: If MCP package is not installed
    """
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install devjournal[mcp]"
        )

    server = Server("devjournal")
    tool_defs = make_tools(engine)
    logger.info("Serving %d tools from %s", len(tool_defs), engine.config.db_path)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return list of available tools."""
        return [
            Tool(
                name=t["name"],
                description=t["description"],
                inputSchema=t["inputSchema"],
            )
            for t in tool_defs.values()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool invocation."""
        result = await execute_tool(engine, name, arguments or {})
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    return server


async def run_server(config: JournalConfig) -> None:
    """Run the MCP server with stdio transport."""
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install devjournal[mcp]"
        )

    engine = JournalEngine(config)  # pragma: no cover
    try:  # pragma: no cover
        server = create_server(engine)
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:  # pragma: no cover
        engine.close()


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="devjournal MCP server - debugging journal tools for AI assistants"
    )
    parser.add_argument(
        "--root",
        "-r",
        type=Path,
        default=Path.cwd(),
        help="Directory to search for a config file (default: current directory)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to config file (default: auto-detect)",
    )
    args = parser.parse_args(argv)

    # Check for MCP before loading config for server mode
    if not HAS_MCP:
        print("Error: MCP package not installed.", file=sys.stderr)
        print("Install with: pip install devjournal[mcp]", file=sys.stderr)
        sys.exit(1)

    # stdout carries the protocol; logs go to stderr
    logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(args.root.resolve(), args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run_server(config))


if __name__ == "__main__":  # pragma: no cover
    main()
