"""Configuration package."""
from .settings import EngineConfig, Settings, settings

__all__ = [
    "EngineConfig",
    "Settings",
    "settings",
]
