"""Tool definitions exposed to tool-calling models, served by the sandbox."""

import json
import logging
from typing import Any

from .sandbox import CommandSandbox, FileSandbox

logger = logging.getLogger(__name__)

AGENT_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": "List files and directories in the workspace.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Relative path to list (default: .)"}
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read the content of a file.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string", "description": "Relative path to the file"}},
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Write content to a file (overwrites if exists).",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Relative path to the file"},
                    "content": {"type": "string", "description": "The content to write"},
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": "Run a command in the workspace (e.g., npm test, ls -la).",
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "The command to execute"}
                },
                "required": ["command"],
            },
        },
    },
]


class SandboxToolbox:
    """Dispatches model tool calls to the file and command sandboxes."""

    def __init__(self, files: FileSandbox, commands: CommandSandbox):
        self.files = files
        self.commands = commands

    async def call(self, name: str, arguments: str | dict[str, Any]) -> str:
        """Run one tool call and return its text result (never raises)."""
        if isinstance(arguments, str):
            try:
                args = json.loads(arguments or "{}")
            except json.JSONDecodeError:
                return "ERROR: Tool arguments must be a JSON object."
        else:
            args = arguments
        if not isinstance(args, dict):
            return "ERROR: Tool arguments must be a JSON object."

        logger.debug("Tool call: %s", name)
        if name == "list_files":
            return self.files.list_files(str(args.get("path") or ".")).to_text()
        if name == "read_file":
            if "path" not in args:
                return "ERROR: Missing required argument: path"
            return self.files.read_file(str(args["path"])).to_text()
        if name == "write_file":
            if "path" not in args or "content" not in args:
                return "ERROR: Missing required arguments: path, content"
            return self.files.write_file(str(args["path"]), str(args["content"])).to_text()
        if name == "run_command":
            if "command" not in args:
                return "ERROR: Missing required argument: command"
            result = await self.commands.execute(str(args["command"]))
            return result.to_text()
        return f"ERROR: Unknown tool: {name}"
