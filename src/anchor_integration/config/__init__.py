"""Configuration management for anchor integration."""

from anchor_integration.config.settings import (
    IntegrationConfig,
    Settings,
    get_settings,
    reset_settings,
)

__all__ = ["IntegrationConfig", "Settings", "get_settings", "reset_settings"]
