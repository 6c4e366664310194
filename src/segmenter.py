from dataclasses import dataclass
import enum
import logging
import time

import numpy as np
from networkx.algorithms.flow import boykov_kolmogorov

from affinity import GAMMA, calc_beta, calc_n_weights
from errors import InvalidInputError
from flow import FlowGraph
from gmm import GaussianMixtureModel, assign_gmms_components, init_gmms, learn_gmms
from graph import GraphBuilder
from scheduler import RegionScheduler
from seed import (GC_PR_BGD, GC_PR_FGD, JOINED_SINK, JOINED_SOURCE,
                  check_image, check_mask, init_mask_with_rect, is_probable)

logger = logging.getLogger(__name__)

# Modes (same values as OpenCV's grabCut)
GC_INIT_WITH_RECT = 0
GC_INIT_WITH_MASK = 1
GC_EVAL = 2


class SegmenterState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    MODEL_INITIALIZED = "model_initialized"
    CONVERGED = "converged"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"


@dataclass
class IterationStats:
    iteration: int
    pixel_count: int
    node_count: int
    flow: float
    source_sink: float
    changed: int
    seconds: float


def estimate_segmentation(graph: FlowGraph, mask: np.ndarray, pxl2vtx: np.ndarray) -> int:
    """
    Relabels the probable pixels from the solved graph. Pixels merged into
    a terminal take that terminal's side without consulting the cut.

    Returns:
    --------
    int
        Number of pixels whose label changed.
    """
    changed = 0
    rows, cols = mask.shape
    for y in range(rows):
        for x in range(cols):
            if mask[y, x] != GC_PR_BGD and mask[y, x] != GC_PR_FGD:
                continue
            v = pxl2vtx[y, x]
            if v == JOINED_SINK:
                label = GC_PR_BGD
            elif v == JOINED_SOURCE:
                label = GC_PR_FGD
            else:
                label = GC_PR_FGD if graph.in_source_segment(int(v)) else GC_PR_BGD
            if mask[y, x] != label:
                mask[y, x] = label
                changed += 1
    return changed


class GrabCutSegmenter:
    """
    Iterative GrabCut segmentation.

    Every iteration assigns the pixels to the components of the
    background and foreground colour models, refits the models, builds
    the (reduced) flow graph, solves the min-cut and relabels the probable
    pixels. The models persist between calls so that a later call in
    GC_EVAL mode continues where the previous one stopped.

    Parameters:
    -----------
    iterations : int
        Number of iterations per call.
    gamma : float
        Smoothness scale of the n-links.
    reduce_graph : bool
        Merge pixels into shared nodes before solving.
    regions : tuple of int, optional
        Region rows and columns for the parallel solver; None solves the
        whole graph at once.
    max_workers : int, optional
        Thread count of the parallel solver.
    stop_when_stable : bool
        Stop early once an iteration leaves the mask unchanged.
    random_state : int
        Seed of the k-means model initialization.
    flow_func : callable
        networkx maximum-flow function.
    """

    def __init__(self, iterations: int = 5, gamma: float = GAMMA, reduce_graph: bool = True,
                 regions=None, max_workers=None, stop_when_stable: bool = False,
                 random_state=0, flow_func=boykov_kolmogorov):
        self.iterations = iterations
        self.gamma = gamma
        self.stop_when_stable = stop_when_stable
        self.random_state = random_state

        self.builder = GraphBuilder(gamma=gamma, reduce=reduce_graph, flow_func=flow_func)
        self.scheduler = RegionScheduler(regions, max_workers) if regions is not None else None

        self.bgd_gmm = GaussianMixtureModel()
        self.fgd_gmm = GaussianMixtureModel()
        self.state = SegmenterState.UNINITIALIZED
        self.history = []

    def segment(self, img: np.ndarray, mask: np.ndarray = None, rect=None,
                mode: int = GC_INIT_WITH_RECT, bgd_model: np.ndarray = None,
                fgd_model: np.ndarray = None) -> np.ndarray:
        """
        Runs GrabCut on an image.

        Parameters:
        -----------
        img : np.ndarray
            8-bit 3-channel image.
        mask : np.ndarray, optional
            uint8 label mask, updated in place. Required unless mode is
            GC_INIT_WITH_RECT.
        rect : tuple, optional
            (x, y, width, height) of the object, for GC_INIT_WITH_RECT.
        mode : int
            GC_INIT_WITH_RECT, GC_INIT_WITH_MASK or GC_EVAL.
        bgd_model, fgd_model : np.ndarray, optional
            Serialized models (see GaussianMixtureModel.to_array) to start
            from in GC_EVAL mode.

        Returns:
        --------
        mask : np.ndarray
            The updated label mask.
        """
        check_image(img)
        if mode not in (GC_INIT_WITH_RECT, GC_INIT_WITH_MASK, GC_EVAL):
            raise InvalidInputError("unknown mode %r" % (mode,))

        self.history = []
        if mode == GC_INIT_WITH_RECT:
            mask = init_mask_with_rect(mask, img.shape[:2], rect)
        else:
            check_mask(img, mask)

        if bgd_model is not None:
            self.bgd_gmm = GaussianMixtureModel(bgd_model)
        if fgd_model is not None:
            self.fgd_gmm = GaussianMixtureModel(fgd_model)

        if not is_probable(mask).any():
            logger.info("mask has no probable pixels, nothing to segment")
            return mask

        if mode in (GC_INIT_WITH_RECT, GC_INIT_WITH_MASK):
            start = time.time()
            init_gmms(img, mask, self.bgd_gmm, self.fgd_gmm, self.random_state)
            self.state = SegmenterState.MODEL_INITIALIZED
            logger.debug("models initialized in %.3fs", time.time() - start)
        elif not (self.bgd_gmm.is_fitted and self.fgd_gmm.is_fitted):
            raise InvalidInputError("GC_EVAL needs fitted models")
        else:
            self.state = SegmenterState.MODEL_INITIALIZED

        if self.iterations <= 0:
            return mask

        start = time.time()
        beta = calc_beta(img)
        weights = calc_n_weights(img, beta, self.gamma)
        logger.debug("beta=%.6g, n-weights computed in %.3fs", beta, time.time() - start)

        self.state = SegmenterState.ITERATION_LIMIT_REACHED
        for i in range(self.iterations):
            stats = self._iterate(i, img, mask, weights)
            self.history.append(stats)
            logger.info("iteration %d: %d nodes for %d pixels, flow %.2f, %d pixels changed",
                        i + 1, stats.node_count, stats.pixel_count, stats.flow, stats.changed)
            if self.stop_when_stable and stats.changed == 0:
                self.state = SegmenterState.CONVERGED
                break

        return mask

    def _iterate(self, i: int, img: np.ndarray, mask: np.ndarray, weights) -> IterationStats:
        start = time.time()

        comp_idxs = assign_gmms_components(img, mask, self.bgd_gmm, self.fgd_gmm)
        learn_gmms(img, mask, comp_idxs, self.bgd_gmm, self.fgd_gmm)

        graph, pxl2vtx = self.builder.build_graph(img, mask, self.bgd_gmm, self.fgd_gmm, weights)
        if self.scheduler is not None:
            flow = self.scheduler.solve(graph, mask.shape)
        else:
            flow = graph.max_flow()

        changed = estimate_segmentation(graph, mask, pxl2vtx)
        return IterationStats(iteration=i + 1, pixel_count=mask.size,
                              node_count=graph.node_count, flow=flow,
                              source_sink=graph.source_sink, changed=changed,
                              seconds=time.time() - start)

    def models(self):
        """The current models as (bgd_model, fgd_model) vectors."""
        return self.bgd_gmm.to_array(), self.fgd_gmm.to_array()
