from pathlib import Path
from typing import List, Sequence

import cv2
import numpy as np
import pytest

from bioharness.utils import configure_logging

configure_logging("WARNING")


@pytest.fixture
def make_image(tmp_path):
    """Write a deterministic random PNG and return its path."""
    image_dir = tmp_path / "images"
    image_dir.mkdir(exist_ok=True)

    def _make(name: str, seed: int = 0, shape=(32, 32, 3), dtype=np.uint8) -> Path:
        rng = np.random.default_rng(seed)
        high = np.iinfo(dtype).max
        array = rng.integers(0, high, size=shape, endpoint=True, dtype=dtype)
        path = image_dir / name
        assert cv2.imwrite(str(path), array)
        return path

    return _make


@pytest.fixture
def write_input(tmp_path):
    """Write input lines to a consolidated input file."""

    def _write(lines: Sequence[str], name: str = "input.txt") -> Path:
        path = tmp_path / name
        path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def quality_lines(make_image) -> List[str]:
    """Ten vectorQ input lines over distinct images."""
    return [
        f"Q{i:02d} {make_image(f'q{i:02d}.png', seed=i)} mugshot" for i in range(10)
    ]


@pytest.fixture
def dirs(tmp_path):
    config_dir = tmp_path / "config"
    output_dir = tmp_path / "output"
    enroll_dir = tmp_path / "enroll"
    config_dir.mkdir()
    return config_dir, output_dir, enroll_dir
