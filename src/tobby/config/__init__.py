"""Configuration: YAML + env overlay."""

from tobby.config.loader import _deep_update, load_config, load_config_with_env
from tobby.config.schema import Config, ServerSettings, cfg

__all__ = ["Config", "ServerSettings", "_deep_update", "cfg", "load_config", "load_config_with_env"]
