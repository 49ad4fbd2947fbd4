"""Interfaces for the collaborators the orchestrator drives (agent workers, task trackers)"""
from abc import ABC, abstractmethod
from typing import Any


class AgentWorker(ABC):
    """Runs one agent role against a prompt and returns its raw output"""

    @abstractmethod
    async def invoke(self, role: str, prompt: str, context: dict[str, Any]) -> str:
        """Run the agent and return everything it printed"""
        pass


class TaskTracker(ABC):
    """Source of the external task list snapshotted into checkpoints"""

    @abstractmethod
    def list_tasks(self) -> list[dict[str, Any]]:
        """Return the current tasks as plain dicts"""
        pass
