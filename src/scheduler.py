from concurrent.futures import ThreadPoolExecutor
import logging
import math
import time

from flow import FlowGraph

logger = logging.getLogger(__name__)


class RegionScheduler:
    """
    Solves a flow graph region by region before one exact global pass.

    The pixel grid is cut into disjoint rectangles. In round 1 every region
    is solved on its own (edges leaving the region are ignored), with the
    regions submitted to a thread pool. Round 2 repeats this on a partition
    shifted by half a region so that flow can cross the round 1
    boundaries. Both rounds only push valid flow, so the final max-flow
    over the complete residual graph yields the exact minimum cut and is
    left with the augmenting the rounds could not do.

    The networkx solvers are pure Python and hold the GIL, so the region
    solves of a round run one after the other in practice; the thread
    pool keeps the round protocol (independent solves, then a barrier)
    rather than providing a speedup.

    Parameters:
    -----------
    regions : tuple of int
        Number of region rows and columns of the round 1 partition.
    max_workers : int, optional
        Thread pool size (ThreadPoolExecutor default when None).
    """

    def __init__(self, regions=(2, 2), max_workers=None):
        self.regions = tuple(int(r) for r in regions)
        if len(self.regions) != 2 or min(self.regions) < 1:
            raise ValueError("regions must be two positive integers")
        self.max_workers = max_workers

    def partition(self, shape, shifted: bool = False) -> list:
        """
        Splits a (rows, cols) grid into rectangles (y0, y1, x0, x1), end
        exclusive. The shifted partition moves every boundary by half a
        region.
        """
        rows, cols = shape
        row_cuts = self._cuts(rows, self.regions[0], shifted)
        col_cuts = self._cuts(cols, self.regions[1], shifted)
        return [(y0, y1, x0, x1)
                for y0, y1 in zip(row_cuts[:-1], row_cuts[1:])
                for x0, x1 in zip(col_cuts[:-1], col_cuts[1:])]

    @staticmethod
    def _cuts(length: int, count: int, shifted: bool) -> list:
        step = max(1, math.ceil(length / count))
        start = step // 2 if shifted else step
        cuts = [0] + list(range(start, length, step)) + [length]
        return sorted(set(cuts))

    @staticmethod
    def node_bounds(graph: FlowGraph) -> list:
        """Bounding box (y0, y1, x0, x1) of the pixels of every node (None without pixels)."""
        bounds = []
        for i in range(graph.node_count):
            pixels = graph.pixels(i)
            if not pixels:
                bounds.append(None)
                continue
            ys = [p[0] for p in pixels]
            xs = [p[1] for p in pixels]
            bounds.append((min(ys), max(ys) + 1, min(xs), max(xs) + 1))
        return bounds

    @staticmethod
    def assign_nodes(bounds: list, regions: list) -> list:
        """
        Node lists per region; a node belongs to a region only if all its
        pixels lie inside it.
        """
        members = [[] for _ in regions]
        for i, box in enumerate(bounds):
            if box is None:
                continue
            ny0, ny1, nx0, nx1 = box
            for r, (y0, y1, x0, x1) in enumerate(regions):
                if y0 <= ny0 and ny1 <= y1 and x0 <= nx0 and nx1 <= x1:
                    members[r].append(i)
                    break
        return members

    def push_region_flows(self, graph: FlowGraph, shape) -> list:
        """
        Runs round 1 and the shifted round 2, applying every region's flow
        to the residual graph once all regions of the round are solved.

        Returns:
        --------
        list of float
            Flow pushed by each round.
        """
        bounds = self.node_bounds(graph)
        pushed = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for round_no, shifted in enumerate((False, True), start=1):
                start = time.time()
                before = graph.total_flow
                regions = self.partition(shape, shifted)
                members = [nodes for nodes in self.assign_nodes(bounds, regions) if nodes]
                futures = [executor.submit(graph.solve_region, nodes) for nodes in members]
                # barrier: the residual graph is only written once every region is solved
                results = [future.result() for future in futures]
                for value, flow_dict in results:
                    graph.apply_flow(value, flow_dict)
                pushed.append(graph.total_flow - before)
                logger.debug("round %d: %d regions solved in %.3fs, pushed %.4f",
                             round_no, len(members), time.time() - start, pushed[-1])
        return pushed

    def solve(self, graph: FlowGraph, shape) -> float:
        """
        Computes the maximum flow and minimum cut of `graph`.

        Returns:
        --------
        float
            Total flow value, as returned by FlowGraph.max_flow.
        """
        self.push_region_flows(graph, shape)
        return graph.max_flow()
