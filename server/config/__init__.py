"""
Copilot Server Configuration Module
Manages all configuration for the copilot search server
"""

from .settings import settings, get_settings, CopilotSettings
from .logging_config import setup_logging

__all__ = ["settings", "get_settings", "CopilotSettings", "setup_logging"]
