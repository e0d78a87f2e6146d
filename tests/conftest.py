"""Shared test fixtures."""

import os
import shutil
import sys
import tempfile

import numpy as np
import pytest

from TexBrew.config import PipelineConfig
from TexBrew.core import save_image


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config():
    return PipelineConfig()


def save_test_png(path, width=64, height=64, channels=3):
    """Create a random test PNG image."""
    arr = np.random.rand(height, width, channels).astype(np.float32)
    save_image(arr, path)
    return arr


def save_gray_png(path, value, width=64, height=64):
    """Create a constant 8-bit grayscale PNG (value in 0..255)."""
    arr = np.full((height, width), value, dtype=np.uint8)
    save_image(arr, path)
    return arr


def save_bumpy_normal_png(path, width=64, height=64, strength=0.8, seed=0):
    """Create a tangent-space normal map with high-frequency noise."""
    rng = np.random.default_rng(seed)
    xy = rng.uniform(-strength, strength, size=(height, width, 2))
    z = np.sqrt(np.clip(1.0 - np.sum(xy ** 2, axis=-1, keepdims=True), 0.0, 1.0))
    normals = np.concatenate([xy, z], axis=-1)
    normals /= np.linalg.norm(normals, axis=-1, keepdims=True)
    arr = (normals * 0.5 + 0.5).astype(np.float32)
    save_image(arr, path)
    return arr


def write_fake_encoder(directory, name="toktx", exit_code=0, write_output=True,
                       version_exit=0, sleep_seconds=0.0):
    """Write an executable stand-in for toktx / ktx.

    ``--version`` exits with `version_exit`.  Otherwise the script copies
    the first ``.png`` argument to the ``.ktx2`` argument, unless told to
    fail or to skip writing.
    """
    path = os.path.join(directory, name)
    script = f"""#!{sys.executable}
import shutil
import sys
import time

args = sys.argv[1:]
if "--version" in args:
    print("{name} v4.3.2 (fake)")
    sys.exit({version_exit})
time.sleep({sleep_seconds!r})
if {exit_code}:
    sys.stderr.write("error: fake encoder failure\\n")
    sys.exit({exit_code})
outputs = [a for a in args if a.endswith(".ktx2")]
inputs = [a for a in args if a.endswith(".png")]
if {write_output!r} and outputs and inputs:
    shutil.copyfile(inputs[0], outputs[0])
print("encoded", len(inputs), "levels")
"""
    with open(path, "w", encoding="utf-8") as f:
        f.write(script)
    os.chmod(path, 0o755)
    return path
