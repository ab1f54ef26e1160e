"""Agent collaborators: credential mounts and environment for each agent CLI."""

from pathlib import Path
from typing import Optional

from rover.agents.base import AgentCredentialFile, AgentTool
from rover.agents.claude import ClaudeAgent
from rover.agents.codex import CodexAgent
from rover.agents.gemini import GeminiAgent
from rover.agents.qwen import QwenAgent
from rover.errors import AgentError

AGENTS: dict[str, type[AgentTool]] = {
    "claude": ClaudeAgent,
    "codex": CodexAgent,
    "gemini": GeminiAgent,
    "qwen": QwenAgent,
}


def get_agent(
    name: str,
    home: Optional[Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> AgentTool:
    """Instantiate an agent by name (case-insensitive)."""
    agent_cls = AGENTS.get(name.lower())
    if agent_cls is None:
        raise AgentError(f"Unknown agent: {name}. Available: {', '.join(AGENTS)}")
    return agent_cls(home=home, environ=environ)


__all__ = [
    "AGENTS",
    "AgentCredentialFile",
    "AgentTool",
    "ClaudeAgent",
    "CodexAgent",
    "GeminiAgent",
    "QwenAgent",
    "get_agent",
]
