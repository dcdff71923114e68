"""Claude Code CLI agent wrapper."""

import json
import logging
import os
import time

from ..utils.subprocess import SubprocessError, SubprocessManager
from ..workspace.manager import Workspace
from .base import AgentError, BaseAgent

logger = logging.getLogger(__name__)

# Passed through to the CLI when present; HOME is the workspace's isolated home.
_PASSTHROUGH_ENV = ("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "CLAUDE_CODE_USE_BEDROCK")


class ClaudeAgent(BaseAgent):
    """Claude Code CLI agent implementation."""

    stream_log_interval_sec = 1.5

    @property
    def cli_path(self) -> str:
        return self.config.cli_path

    async def plan(self, prompt: str, workspace: Workspace) -> str:
        """Run the CLI in plan permission mode so no file is touched."""
        command = [self.cli_path, "--permission-mode", "plan", *self._disallowed_flags()]
        if self.config.plan_model:
            command += ["--model", self.config.plan_model]
        result = await self._run(command, prompt, workspace, self.config.plan_timeout_sec)
        return result["output"]

    async def execute(self, prompt: str, workspace: Workspace) -> dict:
        """Run the CLI with native tools restricted to the configured list.

        Bash stays disallowed unless re-enabled in config. Commands the CLI
        runs itself never pass the command sandbox.
        """
        if "Bash" in self.config.allowed_tools and "Bash" not in self.config.disallowed_tools:
            logger.warning("Claude CLI may run shell commands outside the command sandbox")
        command = [
            self.cli_path,
            "--permission-mode",
            self.config.permission_mode,
            "--allowedTools",
            ",".join(self.config.allowed_tools),
            *self._disallowed_flags(),
        ]
        if self.config.execute_model:
            command += ["--model", self.config.execute_model]
        return await self._run(command, prompt, workspace, self.config.execute_timeout_sec)

    async def _run(
        self, command: list[str], prompt: str, workspace: Workspace, timeout_sec: int
    ) -> dict:
        command = command + [
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            prompt,
        ]
        stream_state = {
            "result": None,
            "text_parts": [],
            "buffer": "",
            "last_flush": time.time(),
        }

        def handle_line(line: str) -> None:
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                return
            if not isinstance(payload, dict):
                return

            payload_type = payload.get("type")
            if payload_type == "result":
                stream_state["result"] = payload.get("result")
            elif payload_type == "assistant":
                for text in _assistant_texts(payload):
                    stream_state["text_parts"].append(text)
                    stream_state["buffer"] += text

            now = time.time()
            buffer_text = stream_state["buffer"]
            if buffer_text and (
                "\n" in buffer_text
                or len(buffer_text) >= 200
                or now - stream_state["last_flush"] >= self.stream_log_interval_sec
            ):
                logger.info("claude> %s", buffer_text.rstrip())
                stream_state["buffer"] = ""
                stream_state["last_flush"] = now

        manager = SubprocessManager(
            timeout_sec=timeout_sec,
            stuck_no_output_sec=self.config.stuck_no_output_sec,
        )
        try:
            result = await manager.run(
                command,
                cwd=workspace.repo_dir,
                env=self._env(workspace),
                on_output_line=handle_line,
            )
        except SubprocessError as e:
            raise AgentError(f"Claude CLI could not run: {e}")

        if stream_state["buffer"]:
            logger.info("claude> %s", stream_state["buffer"].rstrip())

        if result["timed_out"]:
            reason = "stuck without output" if result["stuck"] else f"timed out after {timeout_sec}s"
            raise AgentError(f"Claude CLI {reason}")

        output_text = self._resolve_streamed_text(result["output"], stream_state)
        if not result["success"]:
            tail = (result["stderr"] or result["output"])[-500:]
            raise AgentError(f"Claude CLI failed (exit code {result['exit_code']}): {tail}")

        return {"success": True, "output": output_text}

    def _disallowed_flags(self) -> list[str]:
        if not self.config.disallowed_tools:
            return []
        return ["--disallowedTools", ",".join(self.config.disallowed_tools)]

    @staticmethod
    def _env(workspace: Workspace) -> dict[str, str]:
        env = workspace.env()
        for name in _PASSTHROUGH_ENV:
            value = os.environ.get(name)
            if value:
                env[name] = value
        return env

    @staticmethod
    def _resolve_streamed_text(output: str, stream_state: dict) -> str:
        """Resolve streamed JSON output into plain text."""
        if stream_state.get("result"):
            return stream_state["result"] or ""
        text = "".join(stream_state.get("text_parts", [])).strip()
        if text:
            return text

        # Fallback: parse from output lines if state is empty
        parts: list[str] = []
        result_text = ""
        for line in output.splitlines():
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(payload, dict):
                continue
            if payload.get("type") == "result":
                result_text = payload.get("result", "") or result_text
            elif payload.get("type") == "assistant":
                parts.extend(_assistant_texts(payload))
        if result_text:
            return result_text
        if parts:
            return "".join(parts).strip()
        # Not stream-json at all (older CLI); use the raw text.
        return output.strip()


def _assistant_texts(payload: dict) -> list[str]:
    message = payload.get("message") or {}
    contents = message.get("content") or []
    if not isinstance(contents, list):
        return []
    return [
        block["text"]
        for block in contents
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
    ]
