"""
Configuration package for Mention Bot.

Modules:
    settings: Centralized configuration using Pydantic Settings
    prompts: AI system prompt modules and the reply template
"""

from config.settings import BotConfig, Settings, settings

__all__ = ["BotConfig", "Settings", "settings"]
