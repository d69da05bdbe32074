"""Subagent control - list, stop, inspect and steer running subagents."""

__version__ = "0.1.0"

from subagent_control.commands import CommandParams, CommandResult, SubagentCommandHandler
from subagent_control.config import Config

__all__ = ["CommandParams", "CommandResult", "Config", "SubagentCommandHandler", "__version__"]
