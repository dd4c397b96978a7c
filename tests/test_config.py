from unittest.mock import patch
from tool_orchestrator import config
from tool_orchestrator.config import Settings

# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def test_to_bool():
    assert config._to_bool("YES") is True
    assert config._to_bool("off") is False
    assert config._to_bool("maybe", default=True) is True
    assert config._to_bool(None) is False

def test_to_positive_int():
    assert config._to_positive_int(" 12 ", default=3) == 12
    assert config._to_positive_int("0", default=3) == 3
    assert config._to_positive_int("abc", default=3) == 3
    assert config._to_positive_int(True, default=3) == 3

def test_to_command_list():
    assert config._to_command_list("rm, git push ,,") == ("rm", "git push")
    assert config._to_command_list("  ") is None
    assert config._to_command_list(None) is None

# ---------------------------------------------------------------------------
# Settings.from_env
# ---------------------------------------------------------------------------

def test_defaults_from_empty_environment(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    settings = Settings.from_env({})
    assert settings.provider == "openrouter"
    assert settings.model is None
    assert settings.workdir == str(tmp_path)
    assert settings.loop.max_rounds == 6
    assert settings.loop.timeout_ms == 120_000
    assert settings.loop.sensitive_commands is None

def test_values_are_read_with_prefix():
    settings = Settings.from_env(
        {
            "TOOL_ORCHESTRATOR_PROVIDER": "ollama",
            "TOOL_ORCHESTRATOR_MODEL": "llama3.1",
            "TOOL_ORCHESTRATOR_MAX_ROUNDS": "10",
            "TOOL_ORCHESTRATOR_ENABLE_PLANNER": "true",
            "TOOL_ORCHESTRATOR_STOP_ON_TOOL_SUCCESS": "0",
            "TOOL_ORCHESTRATOR_TEMPERATURE": "0.7",
            "TOOL_ORCHESTRATOR_SENSITIVE_COMMANDS": "rm,sudo",
            "TOOL_ORCHESTRATOR_WORKDIR": "/srv/project",
        }
    )
    assert settings.provider == "ollama"
    assert settings.model == "llama3.1"
    assert settings.workdir == "/srv/project"
    assert settings.loop.max_rounds == 10
    assert settings.loop.enable_planner is True
    assert settings.loop.stop_on_tool_success is False
    assert settings.loop.temperature == 0.7
    assert settings.loop.sensitive_commands == ("rm", "sudo")

def test_invalid_values_fall_back_to_defaults():
    settings = Settings.from_env(
        {
            "TOOL_ORCHESTRATOR_MAX_ROUNDS": "-4",
            "TOOL_ORCHESTRATOR_TIMEOUT_MS": "soon",
            "TOOL_ORCHESTRATOR_TEMPERATURE": "warm",
            "TOOL_ORCHESTRATOR_ENABLE_REVIEWER": "perhaps",
        }
    )
    assert settings.loop.max_rounds == 6
    assert settings.loop.timeout_ms == 120_000
    assert settings.loop.temperature == 0.2
    assert settings.loop.enable_reviewer is False

@patch("tool_orchestrator.config.load_dotenv")
def test_dotenv_only_loaded_for_process_environment(mock_load_dotenv):
    Settings.from_env({})
    mock_load_dotenv.assert_not_called()

    Settings.from_env()
    mock_load_dotenv.assert_called_once()
