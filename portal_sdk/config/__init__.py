"""Configuration module for the portal SDK."""
from .settings import SdkSettings, load_settings

__all__ = ["SdkSettings", "load_settings"]
