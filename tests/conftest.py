"""Shared test fixtures."""

import os
import shutil
import tempfile

import numpy as np
import pytest

from KtxForge.config import PipelineConfig
from KtxForge.core import save_image


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config(tmp_dir):
    config = PipelineConfig()
    config.scratch_dir = tmp_dir
    return config


@pytest.fixture
def gradient_png(tmp_dir):
    """A 16x8 RGB gradient saved as PNG; returns its path."""
    ramp = np.linspace(0.1, 0.8, 16, dtype=np.float32)
    arr = np.repeat(ramp[np.newaxis, :, np.newaxis], 8, axis=0)
    arr = np.repeat(arr, 3, axis=2)
    path = os.path.join(tmp_dir, "rock_albedo.png")
    save_image(arr, path)
    return path
