"""Base class for agent collaborators.

An agent tells the sandbox which host credential files to bind-mount and
which environment variables to forward. Prompting and response parsing
happen inside the container and are not handled here.
"""

import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rover.errors import AgentError
from rover.sandbox.spec import EnvVar, Mount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentCredentialFile:
    """A host file the agent needs inside the container."""

    path: Path
    target: str
    description: str
    required: bool = True


class AgentTool(ABC):
    """
    Base class for all agent collaborators.

    Subclasses declare:
    - the credential files to mount
    - the host environment variables to forward
    """

    # Host variables forwarded by name when they are set
    ENV_VARS: tuple[str, ...] = ()

    def __init__(self, home: Optional[Path] = None, environ: Optional[dict[str, str]] = None):
        self.home = home or Path.home()
        self.environ = environ if environ is not None else dict(os.environ)
        self._temp_dirs: list[Path] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Agent identifier passed to the agent runtime (e.g. 'claude')."""
        pass

    @abstractmethod
    def required_credentials(self) -> list[AgentCredentialFile]:
        pass

    def validate_credentials(self) -> list[AgentCredentialFile]:
        """Required credential files missing on the host."""
        return [
            cred
            for cred in self.required_credentials()
            if cred.required and not cred.path.exists()
        ]

    def ensure_credentials(self) -> None:
        missing = self.validate_credentials()
        if missing:
            paths = ", ".join(str(cred.path) for cred in missing)
            raise AgentError(f"Missing {self.name} credentials: {paths}")

    def container_mounts(self) -> list[Mount]:
        """Read-only mounts for every credential file present on the host."""
        return [
            Mount(source=cred.path, target=cred.target, read_only=True)
            for cred in self.required_credentials()
            if cred.path.exists()
        ]

    def environment(self) -> list[EnvVar]:
        """Host variables to pass through by name, in declaration order."""
        return [EnvVar(name) for name in self.ENV_VARS if name in self.environ]

    def make_temp_dir(self) -> Path:
        path = Path(tempfile.mkdtemp(prefix="rover-"))
        self._temp_dirs.append(path)
        return path

    def cleanup(self) -> None:
        """Remove temporary credential files created for this run."""
        for path in self._temp_dirs:
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove temporary credentials {path}: {e}")
        self._temp_dirs.clear()
