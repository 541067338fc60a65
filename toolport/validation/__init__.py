"""
toolport validation module.

This module provides configuration loading and schema enforcement.
"""

from toolport.validation.config import Config, ConfigError, ToolportConfig

__all__ = ["Config", "ConfigError", "ToolportConfig"]
