"""Base agent interface."""

from abc import ABC, abstractmethod

from ..config.models import AgentConfig
from ..workspace.manager import Workspace


class AgentError(Exception):
    """Agent execution error."""

    pass


class BaseAgent(ABC):
    """Base agent interface.

    Agents are the model boundary: they take a prompt and a workspace and
    return text. Quality of the output is not judged here.
    """

    def __init__(self, config: AgentConfig):
        """Initialize agent.

        Args:
            config: Agent configuration section
        """
        self.config = config

    @abstractmethod
    async def plan(self, prompt: str, workspace: Workspace) -> str:
        """Produce a plan without modifying the workspace.

        Args:
            prompt: Planner prompt
            workspace: Workspace the plan is for

        Returns:
            Raw model output (may contain ``<plan>`` tags)

        Raises:
            AgentError: On execution failure
        """
        pass

    @abstractmethod
    async def execute(self, prompt: str, workspace: Workspace) -> dict:
        """Carry out a plan inside the workspace.

        Args:
            prompt: Executor prompt
            workspace: Workspace to modify

        Returns:
            Result dict with keys:
                - success: bool
                - output: str (final model text)

        Raises:
            AgentError: On execution failure
        """
        pass
