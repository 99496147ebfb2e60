"""Configuration, project context and prompt construction."""

from ticketpilot.core.config import Config
from ticketpilot.core.context import ProjectContext
from ticketpilot.core.prompts import PromptBuilder

__all__ = ["Config", "ProjectContext", "PromptBuilder"]
