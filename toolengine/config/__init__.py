"""Configuration — environment-driven settings."""
from .settings import Settings, settings

__all__ = ["Settings", "settings"]
