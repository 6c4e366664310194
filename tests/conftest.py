"""
Pytest fixtures for the GrabCut tests.

Provides synthetic images, label masks and fitted colour models.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add src/ to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from gmm import GaussianMixtureModel, assign_gmms_components, init_gmms, learn_gmms  # noqa: E402
from seed import GC_BGD, GC_FGD, GC_PR_BGD, GC_PR_FGD  # noqa: E402

BACKGROUND_COLOR = (20, 30, 40)
FOREGROUND_COLOR = (220, 200, 180)


@pytest.fixture
def block_image():
    """
    10x10 image, background colour everywhere except a uniform 4x4
    foreground block at rows 3-6, cols 3-6.
    """
    img = np.empty((10, 10, 3), dtype=np.uint8)
    img[:] = BACKGROUND_COLOR
    img[3:7, 3:7] = FOREGROUND_COLOR
    return img


@pytest.fixture
def block_rect():
    """Rectangle (x, y, w, h) around the block, leaving a 1 pixel border."""
    return (1, 1, 8, 8)


@pytest.fixture
def random_scene():
    """
    Factory for a random image and a label mask using all four labels.

    With blocky=True the image is made of a few flat patches plus noise,
    which gives the strong n-links that let pixels merge; otherwise every
    pixel has an independent random colour.
    """
    def make(rows, cols, seed=0, blocky=True):
        rng = np.random.default_rng(seed)
        if blocky:
            palette = rng.integers(0, 256, size=(3, 3))
            patches = rng.integers(0, 3, size=((rows + 1) // 2, (cols + 1) // 2))
            base = palette[np.kron(patches, np.ones((2, 2), dtype=int))[:rows, :cols]]
            noise = rng.integers(-6, 7, size=(rows, cols, 3))
            img = np.clip(base + noise, 0, 255).astype(np.uint8)
        else:
            img = rng.integers(0, 256, size=(rows, cols, 3)).astype(np.uint8)

        mask = rng.choice([GC_BGD, GC_FGD, GC_PR_BGD, GC_PR_FGD], size=(rows, cols),
                          p=[0.2, 0.1, 0.35, 0.35]).astype(np.uint8)
        mask[0, 0] = GC_BGD
        mask[-1, -1] = GC_FGD
        return img, mask

    return make


@pytest.fixture
def fitted_models():
    """Factory fitting background/foreground models to an image and mask."""
    def fit(img, mask):
        bgd_gmm = GaussianMixtureModel()
        fgd_gmm = GaussianMixtureModel()
        init_gmms(img, mask, bgd_gmm, fgd_gmm, random_state=0)
        comp_idxs = assign_gmms_components(img, mask, bgd_gmm, fgd_gmm)
        learn_gmms(img, mask, comp_idxs, bgd_gmm, fgd_gmm)
        return bgd_gmm, fgd_gmm

    return fit
