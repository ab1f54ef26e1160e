"""OpenAI Codex agent."""

from rover.agents.base import AgentCredentialFile, AgentTool


class CodexAgent(AgentTool):
    ENV_VARS = ("OPENAI_API_KEY", "OPENAI_BASE_URL")

    @property
    def name(self) -> str:
        return "codex"

    def required_credentials(self) -> list[AgentCredentialFile]:
        codex_dir = self.home / ".codex"
        return [
            AgentCredentialFile(codex_dir / "auth.json", "/.codex/auth.json", "Codex authentication"),
            AgentCredentialFile(codex_dir / "config.json", "/.codex/config.json", "Codex configuration"),
        ]
