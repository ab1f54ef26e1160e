import json

import pytest

from rover.config import ProjectConfig, Settings, find_project_root
from rover.errors import LoadError, ValidationError


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("AGENT_IMAGE", "custom/agent:1")
    monkeypatch.setenv("ROVER_BACKEND", "podman")
    monkeypatch.setenv("ROVER_BACKEND_TIMEOUT", "12.5")

    settings = Settings()

    assert settings.agent_image == "custom/agent:1"
    assert settings.backend == "podman"
    assert settings.backend_timeout == 12.5
    assert settings.default_agent == "claude"


def test_missing_project_config_uses_defaults(project):
    config = ProjectConfig.load(project)

    assert config.project_root == project
    assert config.envs == []
    assert config.init_script_path is None
    assert config.attribution is True


def test_project_config_aliases(project):
    (project / "rover.json").write_text(
        json.dumps(
            {
                "version": "1.2",
                "agentImage": "my/image",
                "initScript": "scripts/init.sh",
                "envs": ["FOO=bar"],
                "envsFile": ".env.rover",
                "languages": ["python"],
                "attribution": False,
            }
        ),
        encoding="utf-8",
    )

    config = ProjectConfig.load(project)

    assert config.agent_image == "my/image"
    assert config.init_script_path == project / "scripts" / "init.sh"
    assert config.envs_file_path == project / ".env.rover"
    assert config.attribution is False


@pytest.mark.parametrize(
    "content,error",
    [
        ("{broken", LoadError),
        ("[]", ValidationError),
        ('{"envs": "not-a-list"}', ValidationError),
    ],
)
def test_invalid_project_config(project, content, error):
    (project / "rover.json").write_text(content, encoding="utf-8")

    with pytest.raises(error):
        ProjectConfig.load(project)


def test_find_project_root(project):
    (project / "rover.json").write_text("{}", encoding="utf-8")
    nested = project / "src" / "pkg"
    nested.mkdir(parents=True)

    assert find_project_root(nested) == project


def test_project_config_with_invalid_utf8(project):
    (project / "rover.json").write_bytes(b'{"envs": ["caf\xc3"]}')

    with pytest.raises(LoadError):
        ProjectConfig.load(project)
