"""Shared fixtures for model-adapter tests."""

import pytest

from model_adapter.metadata.registry import ModelRegistry


@pytest.fixture
def reg() -> ModelRegistry:
    """A fresh, isolated metadata registry."""
    return ModelRegistry()
