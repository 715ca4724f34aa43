"""Shared test fixtures."""

import os
import shutil
import tempfile

import pytest

from PixelOverlay.config import OverlayConfig
from PixelOverlay.manager import TemplateManager
from PixelOverlay.core.storage import TemplateStore


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config():
    return OverlayConfig()


@pytest.fixture
def store_config(tmp_dir):
    config = OverlayConfig()
    config.storage.primary_path = os.path.join(tmp_dir, "templates.json")
    config.storage.secondary_path = os.path.join(tmp_dir, "templates.backup.json")
    return config


@pytest.fixture
def stored_manager(store_config):
    """Manager persisting into a temporary primary/secondary pair."""
    return TemplateManager(store_config, TemplateStore.from_config(store_config.storage))
