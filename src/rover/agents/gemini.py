"""Gemini CLI agent.

The whole ~/.gemini folder is mounted, so the per-file credentials below
are only used to validate the host setup.
"""

from pathlib import Path

from rover.agents.base import AgentCredentialFile, AgentTool
from rover.sandbox.spec import Mount


class GeminiAgent(AgentTool):
    ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GOOGLE_CLOUD_PROJECT")

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def config_dir(self) -> Path:
        return self.home / ".gemini"

    def required_credentials(self) -> list[AgentCredentialFile]:
        # An API key replaces the OAuth files
        required = "GEMINI_API_KEY" not in self.environ
        return [
            AgentCredentialFile(
                self.config_dir / "oauth_creds.json",
                "/.gemini/oauth_creds.json",
                "Gemini OAuth credentials",
                required,
            ),
            AgentCredentialFile(
                self.config_dir / "settings.json",
                "/.gemini/settings.json",
                "Gemini settings",
                required,
            ),
            AgentCredentialFile(
                self.config_dir / "user_id",
                "/.gemini/user_id",
                "Gemini user ID",
                False,
            ),
        ]

    def container_mounts(self) -> list[Mount]:
        if not self.config_dir.exists():
            return []
        return [Mount(self.config_dir, "/.gemini", read_only=True)]
