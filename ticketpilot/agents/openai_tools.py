"""OpenAI tool-calling agent whose tools are served by the command sandbox."""

import logging
import os
from typing import Any, Optional

import openai

from ..config.models import AgentConfig, SandboxConfig
from ..safety.sandbox import CommandSandbox, FileSandbox
from ..safety.tools import AGENT_TOOLS, SandboxToolbox
from ..workspace.manager import Workspace
from .base import AgentError, BaseAgent

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a software engineer working inside a sandboxed repository checkout. "
    "Use the provided tools to inspect and change files and to run build and test commands. "
    "Paths are relative to the repository root. When you are done, reply with a short summary."
)


class OpenAIToolsAgent(BaseAgent):
    """Chat-completions agent with list/read/write/run tools.

    The model never touches the filesystem or a shell directly: every tool
    call goes through `SandboxToolbox`, so the allow/deny gates and the path
    boundary apply to everything it does.
    """

    def __init__(
        self,
        config: AgentConfig,
        sandbox: Optional[SandboxConfig] = None,
        client: Any = None,
    ):
        super().__init__(config)
        self.sandbox = sandbox or SandboxConfig()
        self.model = config.model or os.environ.get("OPENAI_MODEL")
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            api_key = os.environ.get(self.config.api_key_env)
            if not api_key:
                raise AgentError(f"API key not found: {self.config.api_key_env}")
            self._client = openai.AsyncOpenAI(api_key=api_key)
        return self._client

    def toolbox_for(self, workspace: Workspace) -> SandboxToolbox:
        files = FileSandbox(workspace.repo_dir, max_file_bytes=self.sandbox.max_file_bytes)
        commands = CommandSandbox(
            workspace.repo_dir,
            timeout_sec=self.sandbox.timeout_sec,
            max_output_bytes=self.sandbox.max_output_bytes,
            stdout_chars=self.sandbox.stdout_chars,
            stderr_chars=self.sandbox.stderr_chars,
            extra_allow_patterns=self.sandbox.allow_patterns,
            extra_deny_patterns=self.sandbox.deny_patterns,
            home_dir=workspace.home_dir,
        )
        return SandboxToolbox(files, commands)

    async def plan(self, prompt: str, workspace: Workspace) -> str:
        response = await self._complete(
            [{"role": "user", "content": prompt}],
            timeout=self.config.plan_timeout_sec,
        )
        return response.choices[0].message.content or ""

    async def execute(self, prompt: str, workspace: Workspace) -> dict:
        toolbox = self.toolbox_for(workspace)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        for turn in range(1, self.config.max_tool_turns + 1):
            response = await self._complete(
                messages,
                tools=AGENT_TOOLS,
                timeout=self.config.execute_timeout_sec,
            )
            message = response.choices[0].message
            tool_calls = message.tool_calls or []
            if not tool_calls:
                logger.info("Executor finished after %d turn(s)", turn)
                return {"success": True, "output": message.content or ""}

            messages.append(
                {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.function.name,
                                "arguments": call.function.arguments,
                            },
                        }
                        for call in tool_calls
                    ],
                }
            )
            for call in tool_calls:
                result = await toolbox.call(call.function.name, call.function.arguments)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": result})

        logger.warning("Executor hit the tool turn limit (%d)", self.config.max_tool_turns)
        return {
            "success": False,
            "output": f"Stopped after {self.config.max_tool_turns} tool turns without finishing.",
        }

    async def _complete(self, messages: list[dict[str, Any]], timeout: float, **kwargs: Any):
        if not self.model:
            raise AgentError("Model not configured. Set agent.model or OPENAI_MODEL.")
        try:
            return await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                timeout=timeout,
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise AgentError(f"OpenAI request failed: {e}")
