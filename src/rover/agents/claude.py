"""Claude Code agent."""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

from rover.agents.base import AgentCredentialFile, AgentTool
from rover.sandbox.spec import Mount

logger = logging.getLogger(__name__)

KEYCHAIN_SERVICE = "Claude Code-credentials"


def find_keychain_credentials(service: str) -> str:
    """Read a generic password from the macOS keychain. Empty string if absent."""
    try:
        result = subprocess.run(
            ["security", "find-generic-password", "-s", service, "-w"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Keychain lookup for {service!r} failed: {e}")
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


class ClaudeAgent(AgentTool):
    ENV_VARS = (
        "ANTHROPIC_API_KEY",
        "ANTHROPIC_BASE_URL",
        "CLAUDE_CODE_USE_BEDROCK",
        "CLAUDE_CODE_USE_VERTEX",
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "AWS_REGION",
        "CLOUD_ML_REGION",
        "ANTHROPIC_VERTEX_PROJECT_ID",
    )

    def __init__(
        self,
        home: Optional[Path] = None,
        environ: Optional[dict[str, str]] = None,
        platform: Optional[str] = None,
    ):
        super().__init__(home, environ)
        self.platform = platform or sys.platform

    @property
    def name(self) -> str:
        return "claude"

    @property
    def uses_cloud_provider(self) -> bool:
        """Bedrock and Vertex take credentials from the environment instead."""
        return (
            self.environ.get("CLAUDE_CODE_USE_BEDROCK") == "1"
            or self.environ.get("CLAUDE_CODE_USE_VERTEX") == "1"
        )

    @property
    def config_file(self) -> Path:
        return self.home / ".claude.json"

    @property
    def credentials_file(self) -> Path:
        return self.home / ".claude" / ".credentials.json"

    def required_credentials(self) -> list[AgentCredentialFile]:
        required = not self.uses_cloud_provider
        return [
            AgentCredentialFile(self.config_file, "/.claude.json", "Claude configuration", required),
            AgentCredentialFile(
                self.credentials_file,
                "/.credentials.json",
                "Claude credentials",
                # macOS keeps them in the keychain
                required and self.platform != "darwin",
            ),
        ]

    def container_mounts(self) -> list[Mount]:
        mounts = []
        if self.config_file.exists():
            mounts.append(Mount(self.config_file, "/.claude.json", read_only=True))

        if self.credentials_file.exists():
            mounts.append(Mount(self.credentials_file, "/.credentials.json", read_only=True))
        elif self.platform == "darwin":
            data = find_keychain_credentials(KEYCHAIN_SERVICE)
            if data:
                creds_file = self.make_temp_dir() / ".credentials.json"
                creds_file.write_text(data, encoding="utf-8")
                creds_file.chmod(0o600)
                # Writable: the container setup shreds it once copied
                mounts.append(Mount(creds_file, "/.credentials.json", read_only=False))
            else:
                logger.warning("No Claude credentials found in the macOS keychain")

        return mounts
