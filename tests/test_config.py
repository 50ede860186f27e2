"""
Tests for Configuration Management
==================================
"""

import json

import pytest

from agentmafia.config import (
    CONFIG_FILENAME,
    DEFAULT_MAX_AGENT_TURNS,
    AgentMafiaConfig,
    parse_max_agent_turns,
)
from agentmafia.errors import ValidationError


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("AGENTMAFIA_DATA_DIR", "AGENTMAFIA_MAX_TURNS", "AGENTMAFIA_PORT", "AGENTMAFIA_MODEL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestAgentMafiaConfig:
    """Tests for config loading."""

    def test_defaults(self, temp_dir, clean_env):
        """Test defaults when no file or env is present."""
        config = AgentMafiaConfig.load(temp_dir)
        assert config.data_dir == temp_dir
        assert config.max_agent_turns == DEFAULT_MAX_AGENT_TURNS
        assert config.max_delegation_depth == 15
        assert config.max_invocations_per_agent == 5

    def test_file_then_env(self, temp_dir, clean_env):
        """Test the env overrides the config file."""
        (temp_dir / CONFIG_FILENAME).write_text(json.dumps({"max_agent_turns": 40, "port": 9000}))
        clean_env.setenv("AGENTMAFIA_MAX_TURNS", "25")
        config = AgentMafiaConfig.load(temp_dir)
        assert config.max_agent_turns == 25
        assert config.port == 9000

    def test_save_round_trip(self, temp_dir, clean_env):
        """Test a saved config loads back."""
        AgentMafiaConfig(data_dir=temp_dir, max_tokens=1024).save()
        assert AgentMafiaConfig.load(temp_dir).max_tokens == 1024

    def test_from_dict_ignores_unknown(self):
        """Test unknown keys are dropped."""
        config = AgentMafiaConfig.from_dict({"host": "0.0.0.0", "colour": "red"})
        assert config.host == "0.0.0.0"


class TestParseMaxAgentTurns:
    """Tests for the maxAgentTurns validator."""

    @pytest.mark.parametrize("value,expected", [(1, 1), ("200", 200), (" 12 ", 12)])
    def test_valid(self, value, expected):
        """Test positive integers are accepted."""
        assert parse_max_agent_turns(value) == expected

    @pytest.mark.parametrize("value", [0, -3, "abc", 2.5, "1e3", True, None, ""])
    def test_invalid(self, value):
        """Test everything else is refused."""
        with pytest.raises(ValidationError):
            parse_max_agent_turns(value)
