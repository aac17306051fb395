"""
chatstream/config.py: Configuration loading with Pydantic models.

Loads config.yaml and expands ${ENV_VAR} references into a ChatStreamConfig.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    # bearer token -> user id. Empty = auth disabled, every caller is default_user
    api_keys: Dict[str, str] = Field(default_factory=dict)
    default_user: str = "local"


class ModelsConfig(BaseModel):
    completion: str = "gpt-3.5-turbo"


class ApiKeysConfig(BaseModel):
    openai: Optional[str] = None


class ProviderConfig(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 60.0


class TokenBudgetConfig(BaseModel):
    context_window: int = 4095
    max_response_tokens: int = 1024
    encoding: str = "cl100k_base"

    @property
    def max_prompt_tokens(self) -> int:
        return self.context_window - self.max_response_tokens


class PromptConfig(BaseModel):
    assistant_name: str = "ChatGPT"
    system_template: str = (
        "You are {assistant_name}, a large language model. Respond conversationally.\n"
        "Current date: {date}\n\n"
    )
    tag_identity: bool = True  # send the owner id as `name` on history messages


class StorageConfig(BaseModel):
    db_path: str = "db/chat.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/chatstream.log"


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class ChatStreamConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    api_keys: ApiKeysConfig = Field(default_factory=ApiKeysConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    token_budget: TokenBudgetConfig = Field(default_factory=TokenBudgetConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Environment variable expansion
# ---------------------------------------------------------------------------

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: Any) -> Any:
    """Recursively expand ${VAR} references in strings within a parsed YAML structure."""
    if isinstance(value, str):
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            return os.environ.get(var_name, match.group(0))

        return _ENV_VAR_PATTERN.sub(replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def load_config(path: str | Path = "config.yaml") -> ChatStreamConfig:
    """Load and parse a chatstream config YAML file.

    Args:
        path: Path to the YAML config file.

    Returns:
        A fully populated :class:`ChatStreamConfig` instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path.resolve()}")

    with config_path.open("r", encoding="utf-8") as fh:
        raw: Dict[str, Any] = yaml.safe_load(fh) or {}

    expanded = _expand_env_vars(raw)
    return ChatStreamConfig.model_validate(expanded)
