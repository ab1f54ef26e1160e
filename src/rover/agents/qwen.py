"""Qwen Code agent."""

from rover.agents.base import AgentCredentialFile, AgentTool


class QwenAgent(AgentTool):
    ENV_VARS = ("DASHSCOPE_API_KEY", "OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL")

    @property
    def name(self) -> str:
        return "qwen"

    def required_credentials(self) -> list[AgentCredentialFile]:
        qwen_dir = self.home / ".qwen"
        return [
            AgentCredentialFile(
                qwen_dir / "installation_id", "/.qwen/installation_id", "Qwen installation ID"
            ),
            AgentCredentialFile(
                qwen_dir / "oauth_creds.json", "/.qwen/oauth_creds.json", "Qwen OAuth credentials"
            ),
            AgentCredentialFile(qwen_dir / "settings.json", "/.qwen/settings.json", "Qwen settings"),
        ]
