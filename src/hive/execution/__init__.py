"""Collaborator interfaces"""
from .protocol import AgentWorker, TaskTracker

__all__ = ["AgentWorker", "TaskTracker"]
