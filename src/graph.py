import logging
import time

import numpy as np
from networkx.algorithms.flow import boykov_kolmogorov

from affinity import GAMMA, LAMBDA_FACTOR, AffinityField
from flow import FlowGraph
from gmm import GaussianMixtureModel
from seed import GC_BGD, GC_FGD, JOINED_SINK, JOINED_SOURCE, is_probable

logger = logging.getLogger(__name__)

NO_VTX_FOUND = -10

EPSILON = np.finfo(np.float64).eps
# -log of this is the largest data term a pixel can get
DENSITY_FLOOR = np.finfo(np.float64).tiny


class _BuildContext:
    """
    Scratch state of a single `GraphBuilder.build_graph` call.
    """

    def __init__(self, weights: AffinityField, to_source: np.ndarray, to_sink: np.ndarray):
        self.rows, self.cols = weights.shape
        self.weights = weights
        self.to_source = to_source
        self.to_sink = to_sink

        # total weight of every pixel in the non reduced graph, t-links included
        self.sigma_w = weights.neighbour_sum() + to_source + to_sink

        self.pxl2vtx = np.full((self.rows, self.cols), NO_VTX_FOUND, dtype=np.int32)
        self.joined = 0

    def index(self, pixel) -> int:
        return pixel[0] * self.cols + pixel[1]


class GraphBuilder:
    """
    Builds the GrabCut flow graph, merging pixels into shared nodes when
    this provably leaves the maximum flow unchanged.

    Pixels are visited in raster order. A probable pixel p is joined to a
    terminal or to the node of one of its four visited neighbours (left,
    up-left, up, up-right) when the weight linking them exceeds half of
    the total weight of p, or half of the total weight of the neighbour's
    node. In both cases every minimum cut keeps the two on the same side.
    The node totals include "pending" edges towards pixels that have not
    been visited yet; they are looked up from the pixels already merged
    into the node.

    Definite pixels always join their terminal: lambda exceeds the sum of
    all n-links of a pixel.

    Parameters:
    -----------
    gamma : float
        Smoothness scale; lambda (hard constraint weight) is 9 * gamma.
    reduce : bool
        When False, every pixel gets its own node (the full graph).
    flow_func : callable
        networkx maximum-flow function handed to the FlowGraph.
    """

    def __init__(self, gamma: float = GAMMA, reduce: bool = True, flow_func=boykov_kolmogorov):
        self.gamma = gamma
        self.lam = LAMBDA_FACTOR * gamma
        self.reduce = reduce
        self.flow_func = flow_func

    def terminal_weights(self, img: np.ndarray, mask: np.ndarray,
                         bgd_gmm: GaussianMixtureModel, fgd_gmm: GaussianMixtureModel):
        """
        Per-pixel t-link weights of the non reduced graph.

        A probable pixel gets -log(background density) towards the source
        and -log(foreground density) towards the sink; definite pixels get
        lambda towards their own terminal. When a probable pixel's pair has
        a negative member, both are raised by the same amount, which adds
        the same constant to every cut.

        Returns:
        --------
        (to_source, to_sink, offset)
            Two float64 grids and the flow constant removed by the shift.
        """
        to_source = np.zeros(mask.shape, dtype=np.float64)
        to_sink = np.zeros(mask.shape, dtype=np.float64)
        offset = 0.0

        probable = is_probable(mask)
        if probable.any():
            colors = img[probable].astype(np.float64)
            from_source = -np.log(np.maximum(bgd_gmm.densities(colors), DENSITY_FLOOR))
            into_sink = -np.log(np.maximum(fgd_gmm.densities(colors), DENSITY_FLOOR))
            shift = np.minimum(np.minimum(from_source, into_sink), 0.0)
            to_source[probable] = from_source - shift
            to_sink[probable] = into_sink - shift
            offset = float(shift.sum())

        to_sink[mask == GC_BGD] = self.lam
        to_source[mask == GC_FGD] = self.lam
        return to_source, to_sink, offset

    def build_graph(self, img: np.ndarray, mask: np.ndarray, bgd_gmm: GaussianMixtureModel,
                    fgd_gmm: GaussianMixtureModel, weights: AffinityField):
        """
        Builds the flow graph for the current mask and models.

        Parameters:
        -----------
        img : np.ndarray
            8-bit 3-channel image.
        mask : np.ndarray
            Label mask (GC_BGD, GC_FGD, GC_PR_BGD, GC_PR_FGD).
        bgd_gmm, fgd_gmm : GaussianMixtureModel
            Fitted background and foreground models.
        weights : AffinityField
            n-link weights of the image.

        Returns:
        --------
        graph : FlowGraph
            The (reduced) graph; graph.source_sink holds the weight of the
            edges that collapsed into a direct source-sink edge.
        pxl2vtx : np.ndarray
            int32 grid with the node of every pixel, or JOINED_SINK /
            JOINED_SOURCE for pixels merged into a terminal.
        """
        start = time.time()
        to_source, to_sink, offset = self.terminal_weights(img, mask, bgd_gmm, fgd_gmm)
        ctx = _BuildContext(weights, to_source, to_sink)

        graph = FlowGraph(flow_func=self.flow_func)
        graph.flow += offset

        probable = is_probable(mask)
        for y in range(ctx.rows):
            for x in range(ctx.cols):
                p = (y, x)
                if probable[y, x]:
                    vtx = self._search_join(p, ctx, graph) if self.reduce else NO_VTX_FOUND
                    if vtx == NO_VTX_FOUND:
                        vtx = graph.add_vtx(p)
                    else:
                        if vtx >= 0:
                            graph.add_pixel(vtx, p)
                        ctx.joined += 1

                    if vtx >= 0:
                        graph.add_term_weights(vtx, to_source[y, x], to_sink[y, x])
                    elif vtx == JOINED_SINK:
                        # the source t-link now runs straight into the sink
                        graph.add_source_sink(to_source[y, x])
                    else:
                        graph.add_source_sink(to_sink[y, x])
                elif self.reduce:
                    vtx = JOINED_SINK if mask[y, x] == GC_BGD else JOINED_SOURCE
                else:
                    vtx = graph.add_vtx(p)
                    graph.add_term_weights(vtx, to_source[y, x], to_sink[y, x])

                ctx.pxl2vtx[y, x] = vtx
                self._add_n_links(p, vtx, ctx, graph)

        logger.debug("graph built in %.3fs: %d nodes for %d pixels, %d joined, source-sink %.4f",
                     time.time() - start, graph.node_count, ctx.rows * ctx.cols,
                     ctx.joined, graph.source_sink)
        return graph, ctx.pxl2vtx

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    @staticmethod
    def _add_n_links(p, vtx: int, ctx: _BuildContext, graph: FlowGraph) -> None:
        """
        Installs the edges between p and its four visited neighbours.
        Edges towards a terminal become t-links, edges between the two
        terminals go to the source-sink correction and edges inside a node
        disappear.
        """
        for neighbour in ctx.weights.backward(*p):
            if neighbour is None:
                continue
            q, w = neighbour
            n = int(ctx.pxl2vtx[q])
            if n >= 0:
                if vtx >= 0:
                    graph.add_weight(vtx, n, w)
                else:
                    graph.add_term_weights(n, w if vtx == JOINED_SOURCE else 0.0,
                                           w if vtx == JOINED_SINK else 0.0)
            elif vtx >= 0:
                graph.add_term_weights(vtx, w if n == JOINED_SOURCE else 0.0,
                                       w if n == JOINED_SINK else 0.0)
            elif vtx != n:
                graph.add_source_sink(w)

    # ------------------------------------------------------------------
    # Joins
    # ------------------------------------------------------------------

    def _search_join(self, p, ctx: _BuildContext, graph: FlowGraph) -> int:
        """
        Searches the first node p can be joined to.

        Returns:
        --------
        int
            A node index, JOINED_SINK / JOINED_SOURCE, or NO_VTX_FOUND.
        """
        y, x = p
        sigma = ctx.sigma_w[y, x]
        if sigma <= EPSILON:
            return NO_VTX_FOUND

        ws = ctx.to_sink[y, x]
        wt = ctx.to_source[y, x]
        if ws > 0.5 * sigma:
            return JOINED_SINK
        if wt > 0.5 * sigma:
            return JOINED_SOURCE

        candidates = [(int(ctx.pxl2vtx[q]), w)
                      for q, w in filter(None, ctx.weights.backward(y, x))]

        for n, _ in candidates:
            # several neighbours may share a node or a terminal
            s = sum(w for m, w in candidates if m == n)
            if n == JOINED_SINK:
                s += ws
            elif n == JOINED_SOURCE:
                s += wt

            if s > 0.5 * sigma:
                return n
            # a terminal never changes sides, so only nodes have the second rule
            if n >= 0 and s > 0.5 * self._node_sum_w(p, n, ctx, graph):
                return n
        return NO_VTX_FOUND

    def _node_sum_w(self, p, n: int, ctx: _BuildContext, graph: FlowGraph) -> float:
        """Total weight of node n, pending edges included."""
        return graph.sum_w(n) + self._pending_sum_w(p, graph.pixels(n), ctx)

    def _pending_sum_w(self, p, pixels: list, ctx: _BuildContext) -> float:
        """
        Sums the pending edges of `pixels` (a raster ordered list). Only
        pixels from the up-left neighbour of p onwards can have one, so the
        scan runs from the most recent pixel backwards and stops there.
        """
        first = ctx.index((p[0] - 1, p[1] - 1))
        s = 0.0
        for q in reversed(pixels):
            if ctx.index(q) < first:
                break
            s += self._pending_w(p, q, ctx)
        return s

    @staticmethod
    def _pending_w(p, q, ctx: _BuildContext) -> float:
        """
        Weight of the edges between the visited pixel q and pixels that
        are not visited yet (p included).
        """
        py, px = p
        qy, qx = q
        weights = ctx.weights
        s = 0.0

        # border pixels: left of p on its row, or from p's column on in the row above
        if (qy == py and qx < px) or (qy == py - 1 and qx >= px):
            if qx == px - 1:
                s += weights.left[qy, qx + 1]  # right neighbour is p
            if qy < ctx.rows - 1:
                s += weights.up[qy + 1, qx]  # down
                if qx > 0 and qx != px:
                    s += weights.upright[qy + 1, qx - 1]  # down-left
                if qx < ctx.cols - 1:
                    s += weights.upleft[qy + 1, qx + 1]  # down-right

        if qy == py - 1 and qx == px - 1:
            s += weights.upleft[py, px]  # down-right neighbour is p

        return s
