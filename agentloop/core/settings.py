r"""
Global Settings Management for agentloop.

Uses platformdirs to store user defaults in OS-standard locations.
Manages run limits (tool-call quota, concurrency, token budgets) and
tracing defaults. Explicit arguments to `create_agent` always win over
stored settings.

Storage Locations (via platformdirs):
- Windows: %LOCALAPPDATA%\agentloop\agentloop\config.json
- Linux: ~/.config/agentloop/config.json
- macOS: ~/Library/Application Support/agentloop/config.json
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from platformdirs import user_config_dir
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


# ============================================================================
# LIMITS MODEL
# ============================================================================

class AgentLimits(BaseModel):
    """
    Per-agent run limits.

    Attributes:
        max_tool_calls: Tool-call quota across the lifetime of a run state.
        max_parallel_tools: Tool calls executed concurrently per batch (values below 1 become 1).
        summary_token_limit: Token budget for summarization model calls.
        max_token: Transcript size that triggers summarization (None disables it).
        context_token_limit: Soft ceiling for transcript size, reported in result metadata.
        tool_output_token_limit: Soft ceiling for a single tool output; larger outputs are
            listed in result metadata.
    """
    model_config = ConfigDict(extra="forbid")

    max_tool_calls: int = Field(default=10, ge=0, description="Tool-call quota per run state")
    max_parallel_tools: int = Field(default=1, description="Concurrent tool calls per batch")
    summary_token_limit: int = Field(default=50_000, ge=0, description="Summarizer token budget")
    max_token: Optional[int] = Field(default=None, ge=0, description="Summarization trigger size")
    context_token_limit: int = Field(default=60_000, ge=0, description="Transcript soft ceiling")
    tool_output_token_limit: int = Field(default=5_000, ge=0, description="Tool output soft ceiling")

    @field_validator("max_parallel_tools", mode="before")
    @classmethod
    def _at_least_one(cls, value: Any) -> Any:
        if value is None:
            return 1
        if isinstance(value, (int, float)) and value < 1:
            return 1
        return value


def coerce_limits(limits: Union[AgentLimits, Dict[str, Any], None]) -> AgentLimits:
    """
    Resolve limits from a model, a partial dict, or stored settings.

    Args:
        limits: AgentLimits, dict of overrides, or None (load user settings).

    Returns:
        AgentLimits instance.

    Raises:
        pydantic.ValidationError: Unknown keys or negative values.
    """
    if isinstance(limits, AgentLimits):
        return limits
    base = get_settings_manager().get_limits()
    if not limits:
        return base
    return AgentLimits(**{**base.model_dump(), **limits})


# ============================================================================
# SETTINGS MANAGER
# ============================================================================

class SettingsManager:
    """
    Manages global user settings in OS-standard config directory.

    Settings are stored as JSON and include:
    - limits (AgentLimits fields)
    - tracing defaults (enabled, log_data)
    """

    APP_NAME = "agentloop"
    APP_AUTHOR = "agentloop"
    CONFIG_FILE_NAME = "config.json"

    DEFAULT_SETTINGS = {
        "limits": AgentLimits().model_dump(),
        "tracing": {
            "enabled": False,
            "log_data": False,
        },
    }

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize SettingsManager.

        Args:
            config_dir: Override directory (defaults to the platformdirs user config dir).
                The directory is created on first save.
        """
        self.config_dir = Path(config_dir) if config_dir else Path(user_config_dir(self.APP_NAME, self.APP_AUTHOR))
        self.config_file = self.config_dir / self.CONFIG_FILE_NAME

        logger.debug(f"Settings config directory: {self.config_dir}")

    def load_settings(self) -> Dict[str, Any]:
        """
        Load settings from config file.

        Returns:
            Dict with settings (uses defaults if file doesn't exist or is unreadable).
        """
        if not self.config_file.exists():
            logger.debug("Config file not found, using defaults")
            return copy.deepcopy(self.DEFAULT_SETTINGS)

        try:
            with self.config_file.open("r", encoding="utf-8") as f:
                settings = json.load(f)
            return self._merge_with_defaults(settings)

        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse config file: {e}")
            logger.warning("Using default settings")
            return copy.deepcopy(self.DEFAULT_SETTINGS)

        except OSError as e:
            logger.error(f"Failed to load settings: {e}")
            return copy.deepcopy(self.DEFAULT_SETTINGS)

    def save_settings(self, settings: Dict[str, Any]) -> bool:
        """
        Save settings to config file.

        Args:
            settings: Settings dict to save.

        Returns:
            True if save succeeded, False otherwise.
        """
        try:
            validated_settings = self._merge_with_defaults(settings)
            AgentLimits(**validated_settings["limits"])

            self.config_dir.mkdir(parents=True, exist_ok=True)

            # Write to temp file first (atomic write)
            temp_file = self.config_file.with_suffix(".tmp")
            with temp_file.open("w", encoding="utf-8") as f:
                json.dump(validated_settings, f, indent=2)
            temp_file.replace(self.config_file)

            logger.info("Settings saved successfully")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"Failed to save settings: {e}")
            return False

    def get_limits(self) -> AgentLimits:
        """
        Get stored run limits.

        Invalid stored values fall back to the defaults.

        Returns:
            AgentLimits instance.
        """
        stored = self.load_settings().get("limits", {})
        try:
            return AgentLimits(**stored)
        except ValueError as e:
            logger.warning(f"Invalid stored limits, using defaults: {e}")
            return AgentLimits()

    def set_limit(self, key: str, value: Any) -> bool:
        """
        Set a single limit.

        Args:
            key: AgentLimits field name.
            value: New value.

        Returns:
            True if save succeeded.
        """
        settings = self.load_settings()
        settings["limits"][key] = value
        return self.save_settings(settings)

    def get_tracing_defaults(self) -> Dict[str, Any]:
        return dict(self.load_settings().get("tracing", {}))

    def _merge_with_defaults(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge user settings with defaults to handle missing keys.

        Args:
            settings: User settings dict (potentially incomplete).

        Returns:
            Complete settings dict with defaults filled in.
        """
        merged = copy.deepcopy(self.DEFAULT_SETTINGS)

        for section in ["limits", "tracing"]:
            if isinstance(settings.get(section), dict):
                merged[section].update(settings[section])

        return merged

    def reset_to_defaults(self) -> bool:
        logger.warning("Resetting settings to defaults")
        return self.save_settings(copy.deepcopy(self.DEFAULT_SETTINGS))

    def get_config_file_path(self) -> Path:
        return self.config_file


# Singleton instance for global access
_settings_manager: Optional[SettingsManager] = None


def get_settings_manager() -> SettingsManager:
    """
    Get singleton SettingsManager instance.

    Returns:
        Global SettingsManager instance.
    """
    global _settings_manager
    if _settings_manager is None:
        _settings_manager = SettingsManager()
    return _settings_manager


def reset_settings_manager() -> None:
    """Reset the singleton (for testing)."""
    global _settings_manager
    _settings_manager = None


__all__ = [
    "AgentLimits",
    "coerce_limits",
    "SettingsManager",
    "get_settings_manager",
    "reset_settings_manager",
]
