from collections import namedtuple
import logging

import numpy as np

logger = logging.getLogger(__name__)

GAMMA = 50.0
LAMBDA_FACTOR = 9

EPSILON = np.finfo(np.float64).eps


def _sqr_diff(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    diff = a - b
    return np.einsum('...k,...k->...', diff, diff)


def calc_beta(img: np.ndarray) -> float:
    """
    Calculates beta = 1 / (2 * avg(||color[i] - color[j]||^2)) over all
    neighbouring pairs, counting each pair once through the left, up-left,
    up and up-right directions. Returns 0 for an image without any colour
    difference.
    """
    rows, cols = img.shape[:2]
    colors = img.astype(np.float64)

    beta = 0.0
    beta += _sqr_diff(colors[:, 1:], colors[:, :-1]).sum()  # left
    beta += _sqr_diff(colors[1:, 1:], colors[:-1, :-1]).sum()  # upleft
    beta += _sqr_diff(colors[1:, :], colors[:-1, :]).sum()  # up
    beta += _sqr_diff(colors[1:, :-1], colors[:-1, 1:]).sum()  # upright

    if beta <= EPSILON:
        return 0.0
    pair_count = 4 * cols * rows - 3 * cols - 3 * rows + 2
    return 1.0 / (2 * beta / pair_count)


class AffinityField(namedtuple("AffinityField", ["left", "upleft", "up", "upright"])):
    """
    Pairwise (n-link) weights of the 8-neighbourhood graph.

    Each grid stores, for pixel (y, x), the weight of the edge towards one
    of its already visited neighbours: (y, x-1), (y-1, x-1), (y-1, x) and
    (y-1, x+1). Every undirected edge is therefore stored exactly once and
    the forward weights of a pixel are read from its neighbours.
    """

    __slots__ = ()

    @property
    def shape(self):
        return self.left.shape

    def backward(self, y: int, x: int):
        """
        The four backward neighbours of (y, x) with their edge weights, in
        left, up-left, up, up-right order; missing neighbours are None.
        """
        rows, cols = self.shape
        return (
            ((y, x - 1), self.left[y, x]) if x > 0 else None,
            ((y - 1, x - 1), self.upleft[y, x]) if x > 0 and y > 0 else None,
            ((y - 1, x), self.up[y, x]) if y > 0 else None,
            ((y - 1, x + 1), self.upright[y, x]) if y > 0 and x < cols - 1 else None,
        )

    def neighbour_sum(self) -> np.ndarray:
        """
        Per-pixel sum of the weights of all 8 neighbours.
        """
        s = self.left + self.upleft + self.up + self.upright
        s[:, :-1] += self.left[:, 1:]  # right
        s[:-1, :-1] += self.upleft[1:, 1:]  # down-right
        s[:-1, :] += self.up[1:, :]  # down
        s[:-1, 1:] += self.upright[1:, :-1]  # down-left
        return s


def calc_n_weights(img: np.ndarray, beta: float, gamma: float = GAMMA) -> AffinityField:
    """
    Calculates the weights of the non-terminal edges of the graph.

    Weight = gamma * exp(-beta * ||color difference||^2); the diagonal
    directions are divided by sqrt(2). Pixels on the border that lack a
    neighbour get weight 0 for that direction.

    Parameters:
    -----------
    img : np.ndarray
        8-bit 3-channel image.
    beta : float
        Contrast parameter, see `calc_beta`.
    gamma : float
        Smoothness scale.
    """
    rows, cols = img.shape[:2]
    colors = img.astype(np.float64)
    gamma_div_sqrt2 = gamma / np.sqrt(2.0)

    left = np.zeros((rows, cols), dtype=np.float64)
    upleft = np.zeros((rows, cols), dtype=np.float64)
    up = np.zeros((rows, cols), dtype=np.float64)
    upright = np.zeros((rows, cols), dtype=np.float64)

    left[:, 1:] = gamma * np.exp(-beta * _sqr_diff(colors[:, 1:], colors[:, :-1]))
    upleft[1:, 1:] = gamma_div_sqrt2 * np.exp(-beta * _sqr_diff(colors[1:, 1:], colors[:-1, :-1]))
    up[1:, :] = gamma * np.exp(-beta * _sqr_diff(colors[1:, :], colors[:-1, :]))
    upright[1:, :-1] = gamma_div_sqrt2 * np.exp(-beta * _sqr_diff(colors[1:, :-1], colors[:-1, 1:]))

    logger.debug("n-weights computed for %dx%d image (beta=%.6g, gamma=%g)", rows, cols, beta, gamma)
    return AffinityField(left, upleft, up, upright)
