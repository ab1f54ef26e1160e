"""Shared test fixtures."""

import shutil
import subprocess
from pathlib import Path

import pytest

from rover.config import Settings
from rover.core.task import TaskStore


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("AGENT_IMAGE", "ROVER_AGENT_IMAGE", "ROVER_BACKEND", "ROVER_VERBOSE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings() -> Settings:
    return Settings(backend_timeout=5.0, git_timeout=30.0)


@pytest.fixture()
def project(tmp_path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root.resolve()


@pytest.fixture()
def store(project) -> TaskStore:
    return TaskStore(project)


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=Rover Tests", "-c", "user.email=tests@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
    )


@pytest.fixture()
def git_repo(project) -> Path:
    """The project directory as a git repository with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    _git(project, "init", "-q")
    _git(project, "checkout", "-q", "-b", "main")
    (project / "README.md").write_text("# project\n", encoding="utf-8")
    (project / ".gitignore").write_text(".rover/\n", encoding="utf-8")
    _git(project, "add", "README.md", ".gitignore")
    _git(project, "commit", "-q", "-m", "initial")
    return project
