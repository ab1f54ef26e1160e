import pytest

from rover.agents import AGENTS, get_agent
from rover.agents.claude import ClaudeAgent
from rover.agents.codex import CodexAgent
from rover.agents.gemini import GeminiAgent
from rover.agents.qwen import QwenAgent
from rover.errors import AgentError
from rover.sandbox.spec import EnvVar


@pytest.fixture()
def home(tmp_path):
    path = tmp_path / "home"
    path.mkdir()
    return path


def test_get_agent(home):
    assert isinstance(get_agent("Claude", home=home), ClaudeAgent)
    assert set(AGENTS) == {"claude", "codex", "gemini", "qwen"}

    with pytest.raises(AgentError, match="Unknown agent"):
        get_agent("copilot")


def test_claude_requires_credentials_on_linux(home):
    agent = ClaudeAgent(home=home, environ={}, platform="linux")

    missing = agent.validate_credentials()

    assert [c.target for c in missing] == ["/.claude.json", "/.credentials.json"]
    with pytest.raises(AgentError):
        agent.ensure_credentials()


def test_claude_with_cloud_provider(home):
    agent = ClaudeAgent(home=home, environ={"CLAUDE_CODE_USE_BEDROCK": "1"}, platform="linux")

    assert agent.validate_credentials() == []
    assert agent.environment() == [EnvVar("CLAUDE_CODE_USE_BEDROCK")]


def test_claude_mounts_existing_files(home):
    (home / ".claude").mkdir()
    (home / ".claude.json").write_text("{}", encoding="utf-8")
    (home / ".claude" / ".credentials.json").write_text("{}", encoding="utf-8")
    agent = ClaudeAgent(home=home, environ={}, platform="linux")

    mounts = agent.container_mounts()

    assert [(m.target, m.read_only) for m in mounts] == [
        ("/.claude.json", True),
        ("/.credentials.json", True),
    ]


def test_claude_keychain_credentials_on_macos(home, monkeypatch):
    (home / ".claude.json").write_text("{}", encoding="utf-8")
    monkeypatch.setattr(
        "rover.agents.claude.find_keychain_credentials", lambda service: '{"token": "t"}'
    )
    agent = ClaudeAgent(home=home, environ={}, platform="darwin")

    assert agent.validate_credentials() == []
    mounts = agent.container_mounts()

    creds = mounts[-1]
    assert creds.target == "/.credentials.json"
    assert not creds.read_only
    assert creds.source.read_text(encoding="utf-8") == '{"token": "t"}'

    agent.cleanup()
    assert not creds.source.exists()


def test_codex_mounts_only_present_files(home):
    (home / ".codex").mkdir()
    (home / ".codex" / "auth.json").write_text("{}", encoding="utf-8")
    agent = CodexAgent(home=home, environ={"OPENAI_API_KEY": "k", "UNRELATED": "x"})

    assert [m.target for m in agent.container_mounts()] == ["/.codex/auth.json"]
    assert [c.target for c in agent.validate_credentials()] == ["/.codex/config.json"]
    assert agent.environment() == [EnvVar("OPENAI_API_KEY")]


def test_gemini_api_key_replaces_oauth(home):
    (home / ".gemini").mkdir()
    with_key = GeminiAgent(home=home, environ={"GEMINI_API_KEY": "k"})
    without_key = GeminiAgent(home=home, environ={})

    assert with_key.validate_credentials() == []
    assert len(without_key.validate_credentials()) == 2
    assert [m.target for m in with_key.container_mounts()] == ["/.gemini"]


def test_qwen_credentials(home):
    agent = QwenAgent(home=home, environ={})

    assert len(agent.validate_credentials()) == 3
    assert agent.container_mounts() == []
