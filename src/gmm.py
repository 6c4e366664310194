import logging
import warnings

import numpy as np
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from errors import InvalidInputError, ModelNotReadyError
from seed import is_background

logger = logging.getLogger(__name__)

COMPONENTS_COUNT = 5
VARIANCE = 0.01
KMEANS_ITERATIONS = 10
EPSILON = np.finfo(np.float64).eps


class GaussianMixtureModel:
    """
    Gaussian Mixture Model over RGB colours, as used by GrabCut.

    Each component keeps a mixing weight, a mean (3), a covariance (3x3)
    and the cached inverse covariance and determinant. Parameters are
    refitted from sufficient statistics (per-component sums, sums of
    outer products and sample counts) collected between `init_learning`
    and `end_learning`.

    Parameters:
    -----------
    model : np.ndarray, optional
        Flat float64 vector of length 13 * n_components laid out as
        [weights, means, covariances], e.g. produced by `to_array`.
    n_components : int
        Number of mixture components.
    """

    def __init__(self, model: np.ndarray = None, n_components: int = COMPONENTS_COUNT):
        self.n_components = n_components

        self.coefs = np.zeros(n_components, dtype=np.float64)
        self.means = np.zeros((n_components, 3), dtype=np.float64)
        self.covs = np.zeros((n_components, 3, 3), dtype=np.float64)

        self.inverse_covs = np.zeros((n_components, 3, 3), dtype=np.float64)
        self.cov_determs = np.zeros(n_components, dtype=np.float64)

        self.init_learning()

        if model is not None:
            self.from_array(model)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def model_size(self) -> int:
        return (1 + 3 + 9) * self.n_components

    def to_array(self) -> np.ndarray:
        """
        Serialises the model to a flat float64 vector [weights, means, covs].
        """
        return np.concatenate([self.coefs, self.means.ravel(), self.covs.ravel()])

    def from_array(self, model: np.ndarray) -> None:
        """
        Restores the model from a vector produced by `to_array`.
        """
        if not isinstance(model, np.ndarray) or model.dtype != np.float64 \
                or model.size != self.model_size or (model.ndim == 2 and model.shape[0] != 1):
            raise InvalidInputError(
                "model must be a float64 vector with 13 * %d values" % self.n_components)
        flat = model.ravel()
        k = self.n_components
        self.coefs = flat[:k].copy()
        self.means = flat[k:4 * k].reshape(k, 3).copy()
        self.covs = flat[4 * k:].reshape(k, 3, 3).copy()
        for ci in range(k):
            if self.coefs[ci] > 0:
                self._calc_inverse_cov_and_determ(ci)

    @property
    def is_fitted(self) -> bool:
        return bool((self.coefs > 0).any())

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def __call__(self, color) -> float:
        return self.evaluate(color)

    def evaluate(self, color) -> float:
        """Mixture density at a single colour."""
        return float(self.densities(color)[0])

    def component_density(self, ci: int, color) -> float:
        """Density of component `ci` at a single colour (0 if unused)."""
        return float(self._component_densities(ci, color)[0])

    def which_component(self, color) -> int:
        """Index of the most likely component; the lowest index wins ties."""
        return int(self.which_components(color)[0])

    def densities(self, colors) -> np.ndarray:
        """
        Mixture density for each row of an (N, 3) colour array.
        """
        if not self.is_fitted:
            raise ModelNotReadyError("mixture model has no component with a positive weight")
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
        res = np.zeros(len(colors), dtype=np.float64)
        for ci in range(self.n_components):
            if self.coefs[ci] > 0:
                res += self.coefs[ci] * self._component_densities(ci, colors)
        return res

    def which_components(self, colors) -> np.ndarray:
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
        per_component = np.stack(
            [self._component_densities(ci, colors) for ci in range(self.n_components)])
        # np.argmax keeps the first maximum, so ties (and all-zero rows) go to the lowest index
        return np.argmax(per_component, axis=0).astype(np.int32)

    def _component_densities(self, ci: int, colors) -> np.ndarray:
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
        if self.coefs[ci] <= 0:
            return np.zeros(len(colors), dtype=np.float64)
        if not self.cov_determs[ci] > EPSILON:
            raise ModelNotReadyError("covariance of component %d is not finalized" % ci)
        diff = colors - self.means[ci]
        mult = np.einsum('ij,jk,ik->i', diff, self.inverse_covs[ci], diff)
        return np.exp(-0.5 * mult) / np.sqrt(self.cov_determs[ci])

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def init_learning(self) -> None:
        k = self.n_components
        self.sums = np.zeros((k, 3), dtype=np.float64)
        self.prods = np.zeros((k, 3, 3), dtype=np.float64)
        self.sample_counts = np.zeros(k, dtype=np.int64)
        self.total_sample_count = 0

    def add_sample(self, ci: int, color) -> None:
        color = np.asarray(color, dtype=np.float64)
        self.sums[ci] += color
        self.prods[ci] += np.outer(color, color)
        self.sample_counts[ci] += 1
        self.total_sample_count += 1

    def add_samples(self, ci: int, colors) -> None:
        """Adds every row of an (N, 3) array to component `ci`."""
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
        if len(colors) == 0:
            return
        self.sums[ci] += colors.sum(axis=0)
        self.prods[ci] += colors.T @ colors
        self.sample_counts[ci] += len(colors)
        self.total_sample_count += len(colors)

    def end_learning(self) -> None:
        """
        Recomputes weights, means and covariances from the accumulated
        statistics. Components without samples get weight 0 and keep their
        stale parameters.
        """
        for ci in range(self.n_components):
            n = self.sample_counts[ci]
            if n == 0:
                self.coefs[ci] = 0
                continue

            self.coefs[ci] = n / self.total_sample_count
            mean = self.sums[ci] / n
            cov = self.prods[ci] / n - np.outer(mean, mean)

            # besides det <= eps, the rank test also inflates components with
            # fewer than 4 distinct samples: their covariance is rank deficient
            # but rounding can still give it a tiny positive determinant
            if np.linalg.det(cov) <= EPSILON or np.linalg.matrix_rank(cov) < 3:
                # white noise keeps the covariance invertible
                cov = cov + VARIANCE * np.eye(3)

            self.means[ci] = mean
            self.covs[ci] = cov
            self._calc_inverse_cov_and_determ(ci)

    def _calc_inverse_cov_and_determ(self, ci: int) -> None:
        if self.coefs[ci] <= 0:
            return
        determ = np.linalg.det(self.covs[ci])
        if not determ > EPSILON:
            raise ModelNotReadyError("covariance of component %d is singular" % ci)
        self.cov_determs[ci] = determ
        self.inverse_covs[ci] = np.linalg.inv(self.covs[ci])


def _kmeans_labels(samples: np.ndarray, n_components: int, random_state) -> np.ndarray:
    n_clusters = min(n_components, len(samples))
    if n_clusters < n_components:
        logger.warning("only %d samples for %d components", len(samples), n_components)
    kmeans = KMeans(n_clusters=n_clusters, init="k-means++", n_init=1,
                    max_iter=KMEANS_ITERATIONS, tol=0.0, random_state=random_state)
    with warnings.catch_warnings():
        # flat colour regions have fewer distinct colours than clusters
        warnings.simplefilter("ignore", ConvergenceWarning)
        kmeans.fit(samples)
    return kmeans.labels_


def init_gmms(img: np.ndarray, mask: np.ndarray, bgd_gmm: GaussianMixtureModel,
              fgd_gmm: GaussianMixtureModel, random_state=0) -> None:
    """
    Initializes the background and foreground models with k-means
    (k-means++ seeding, 10 iterations) over the background-like and
    foreground-like pixels of the mask.
    """
    colors = img.reshape(-1, 3).astype(np.float32)
    bgd = is_background(mask).ravel()
    bgd_samples = colors[bgd]
    fgd_samples = colors[~bgd]
    if len(bgd_samples) == 0 or len(fgd_samples) == 0:
        raise InvalidInputError("mask must contain both background and foreground pixels")

    for gmm, samples in ((bgd_gmm, bgd_samples), (fgd_gmm, fgd_samples)):
        labels = _kmeans_labels(samples, gmm.n_components, random_state)
        gmm.init_learning()
        for ci in range(gmm.n_components):
            gmm.add_samples(ci, samples[labels == ci])
        gmm.end_learning()

    logger.debug("initialized models from %d background and %d foreground samples",
                 len(bgd_samples), len(fgd_samples))


def assign_gmms_components(img: np.ndarray, mask: np.ndarray, bgd_gmm: GaussianMixtureModel,
                           fgd_gmm: GaussianMixtureModel) -> np.ndarray:
    """
    Assigns every pixel to the most likely component of the model matching
    its current class. Returns an int32 grid of component indices.
    """
    colors = img.reshape(-1, 3).astype(np.float64)
    bgd = is_background(mask).ravel()
    comp_idxs = np.zeros(len(colors), dtype=np.int32)
    if bgd.any():
        comp_idxs[bgd] = bgd_gmm.which_components(colors[bgd])
    if (~bgd).any():
        comp_idxs[~bgd] = fgd_gmm.which_components(colors[~bgd])
    return comp_idxs.reshape(mask.shape)


def learn_gmms(img: np.ndarray, mask: np.ndarray, comp_idxs: np.ndarray,
               bgd_gmm: GaussianMixtureModel, fgd_gmm: GaussianMixtureModel) -> None:
    """Refits both models from the current component assignment."""
    colors = img.reshape(-1, 3).astype(np.float64)
    bgd = is_background(mask).ravel()
    comps = comp_idxs.ravel()

    bgd_gmm.init_learning()
    fgd_gmm.init_learning()
    for ci in range(bgd_gmm.n_components):
        in_component = comps == ci
        bgd_gmm.add_samples(ci, colors[in_component & bgd])
        fgd_gmm.add_samples(ci, colors[in_component & ~bgd])
    for gmm in (bgd_gmm, fgd_gmm):
        if gmm.total_sample_count == 0:
            # every pixel moved to the other class; keep the previous fit
            logger.debug("model received no samples, keeping its parameters")
            continue
        gmm.end_learning()
