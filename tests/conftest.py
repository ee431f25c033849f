"""
Shared fixtures for the packing and scrap-pipeline tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest

# Modules live at the repository root
sys.path.insert(0, str(Path(__file__).parent.parent))

from rect_packer import PackingConfig


def free_mask(width_px, height_px):
    return np.full((height_px, width_px), 255, dtype=np.uint8)


@pytest.fixture
def square_mask():
    """Fully usable 100x100 px mask standing for a 50x50 mm board (2 px/mm)."""
    return free_mask(100, 100)


@pytest.fixture
def striped_mask():
    """Same board with an unusable vertical stripe from x=20 mm to x=30 mm."""
    mask = free_mask(100, 100)
    mask[:, 40:60] = 0
    return mask


@pytest.fixture
def tiling_config():
    return PackingConfig(
        max_width_mm=20,
        max_height_mm=20,
        min_width_mm=10,
        min_height_mm=10,
        step_mm=10,
        gap_mm=0,
        coverage_threshold=0.9,
        orientation="both",
    )
