import random
from pathlib import Path

import pytest
from PIL import Image


def noise_image(size, seed=0, mode='RGB') -> Image.Image:
    """Random pixels, which JPEG compresses poorly."""
    rnd = random.Random(seed)
    width, height = size
    bands = len(mode)
    data = bytes(rnd.getrandbits(8) for _ in range(width * height * bands))
    return Image.frombytes(mode, size, data)


def gradient_image(size) -> Image.Image:
    """Smooth content, which JPEG compresses well."""
    gradient = Image.linear_gradient('L').resize(size)
    return Image.merge('RGB', (gradient, gradient.transpose(Image.Transpose.FLIP_LEFT_RIGHT), gradient))


@pytest.fixture
def make_image(tmp_path):
    """Write a synthetic image into tmp_path/src and return its path."""
    src_dir = tmp_path / 'src'
    src_dir.mkdir(exist_ok=True)

    def _make(name, size=(64, 48), fmt=None, noise=False, img=None, **save_kw) -> Path:
        if img is None:
            img = noise_image(size) if noise else gradient_image(size)
        path = src_dir / name
        img.save(path, format=fmt, **save_kw)
        return path

    return _make


@pytest.fixture
def out_dir(tmp_path):
    path = tmp_path / 'out'
    path.mkdir()
    return path
