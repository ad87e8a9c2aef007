"""Configuration management: profiles, TOML loading, and config models.

Usage:
    >>> from model_adapter.config import load_config, BackendProfile, AdapterConfig
"""

from model_adapter.config.loader import load_config
from model_adapter.config.models import AdapterConfig, BackendProfile

__all__ = ["load_config", "AdapterConfig", "BackendProfile"]
