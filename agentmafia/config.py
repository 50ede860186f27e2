"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.

Usage:
    from agentmafia.config import AgentMafiaConfig

    config = AgentMafiaConfig.load()
    print(config.max_agent_turns)
"""

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from agentmafia.errors import ValidationError

# Default configuration values
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_VISUAL_MODEL = "kimi-2.5-latest"
DEFAULT_DATA_DIR = ".agentmafia"
CONFIG_FILENAME = "agentmafia.json"
DEFAULT_MAX_AGENT_TURNS = 200

# Setting keys stored in the database
MAX_AGENT_TURNS_KEY = "maxAgentTurns"

# Environment variable -> (field name, parser)
_ENV_OVERRIDES = {
    "AGENTMAFIA_MODEL": ("default_model", str),
    "AGENTMAFIA_PLANNER_MODEL": ("planner_model", str),
    "AGENTMAFIA_VISUAL_MODEL": ("visual_analyst_model", str),
    "AGENTMAFIA_MAX_TURNS": ("max_agent_turns", int),
    "AGENTMAFIA_MAX_DEPTH": ("max_delegation_depth", int),
    "AGENTMAFIA_MAX_INVOCATIONS": ("max_invocations_per_agent", int),
    "AGENTMAFIA_MAX_TOKENS": ("max_tokens", int),
    "AGENTMAFIA_COMMAND_TIMEOUT": ("command_timeout", float),
    "AGENTMAFIA_SANDBOX_TIMEOUT": ("sandbox_timeout", float),
    "AGENTMAFIA_HEARTBEAT": ("heartbeat_seconds", float),
    "AGENTMAFIA_HOST": ("host", str),
    "AGENTMAFIA_PORT": ("port", int),
}


@dataclass
class AgentMafiaConfig:
    """Agent Mafia configuration."""
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    default_model: str = DEFAULT_MODEL
    planner_model: str = DEFAULT_MODEL
    # Analysis-only model shown attached images first; empty disables
    visual_analyst_model: str = DEFAULT_VISUAL_MODEL

    # Safety valves
    max_agent_turns: int = DEFAULT_MAX_AGENT_TURNS
    max_delegation_depth: int = 15
    max_invocations_per_agent: int = 5
    max_consecutive_provider_errors: int = 3
    max_tokens: int = 8192

    # Tool execution
    command_timeout: float = 120.0
    sandbox_timeout: float = 30.0

    # Transport
    heartbeat_seconds: float = 30.0
    host: str = "127.0.0.1"
    port: int = 8679

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["data_dir"] = str(self.data_dir)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AgentMafiaConfig":
        """Create config from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "data_dir" in values:
            values["data_dir"] = Path(values["data_dir"])
        return cls(**values)

    def save(self) -> Path:
        """Write this config to the data directory."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self.data_dir / CONFIG_FILENAME
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "AgentMafiaConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables (a .env file is honored)
        2. Config file (agentmafia.json in the data directory)
        3. Default values
        """
        load_dotenv()

        root = Path(data_dir or os.environ.get("AGENTMAFIA_DATA_DIR") or DEFAULT_DATA_DIR)
        config: dict[str, Any] = {"data_dir": root}

        config_path = root / CONFIG_FILENAME
        if config_path.exists():
            file_config = json.loads(config_path.read_text(encoding="utf-8"))
            file_config.pop("data_dir", None)
            config.update(file_config)

        for env_name, (field_name, parser) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw:
                config[field_name] = parser(raw)

        return cls.from_dict(config)


def parse_max_agent_turns(value: Any) -> int:
    """
    Validate a maxAgentTurns setting value.

    Accepts ints and numeric strings; anything that is not a positive
    integer raises ValidationError.
    """
    if isinstance(value, bool):
        raise ValidationError("maxAgentTurns must be a positive integer")
    try:
        turns = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError("maxAgentTurns must be a positive integer") from None
    if turns < 1 or str(turns) != str(value).strip():
        raise ValidationError("maxAgentTurns must be a positive integer")
    return turns


def get_default_model() -> str:
    """Get the default model from configuration."""
    return AgentMafiaConfig.load().default_model
