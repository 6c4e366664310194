import logging

import networkx as nx
from networkx.algorithms.flow import boykov_kolmogorov

logger = logging.getLogger(__name__)

SOURCE = "source"
SINK = "sink"

# capacities are stored as integer multiples of 1 / CAPACITY_SCALE so that
# the networkx flow algorithms run on exact arithmetic
CAPACITY_SCALE = 10 ** 9


class FlowGraph:
    """
    Flow graph for the GrabCut min-cut, kept as a residual network.

    Nodes are integers; the two terminals are the strings "source"
    (foreground) and "sink" (background). Every node remembers the pixels
    merged into it and the raw total weight of the edges incident to it.
    Edge capacities live on a networkx.DiGraph and are always residual
    capacities, so the graph can be solved in several steps: region solves
    followed by one exact solve over the complete residual network, each
    step augmenting what the previous ones left.

    Parameters:
    -----------
    flow_func : callable
        A networkx maximum-flow function (boykov_kolmogorov by default).
    """

    def __init__(self, flow_func=boykov_kolmogorov):
        self.flow_func = flow_func

        self._residual = nx.DiGraph()
        self._residual.add_node(SOURCE)
        self._residual.add_node(SINK)

        self._pixels = []
        self._sum_w = []

        # constants moved out of netted t-links
        self.flow = 0.0
        # capacity of the direct source-sink edge left by terminal joins
        self.source_sink = 0.0
        # augmented flow, in capacity units
        self._pushed = 0

        self._source_side = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @property
    def node_count(self) -> int:
        return len(self._pixels)

    def add_vtx(self, pixel=None) -> int:
        i = len(self._pixels)
        self._residual.add_node(i)
        self._pixels.append([] if pixel is None else [pixel])
        self._sum_w.append(0.0)
        self._source_side = None
        return i

    def add_pixel(self, i: int, pixel) -> None:
        self._pixels[i].append(pixel)

    def pixels(self, i: int) -> list:
        """Pixels merged into node i, in the order they were added."""
        return self._pixels[i]

    def add_term_weights(self, i: int, source_w: float, sink_w: float) -> None:
        """
        Adds t-link capacities to node i.

        Only the difference between the two weights matters for the cut,
        so the smaller one is moved into the constant flow; this also keeps
        negative data terms valid.
        """
        self._sum_w[i] += source_w + sink_w

        common = min(source_w, sink_w)
        self.flow += common
        self._add_capacity(SOURCE, i, source_w - common)
        self._add_capacity(i, SINK, sink_w - common)

    def add_weight(self, i: int, j: int, w: float) -> None:
        """Adds w to the undirected edge between nodes i and j."""
        if i == j:
            return
        self._sum_w[i] += w
        self._sum_w[j] += w
        self._add_capacity(i, j, w)
        self._add_capacity(j, i, w)

    def add_source_sink(self, w: float) -> None:
        """Adds w to the direct source-sink edge; all of it is flow."""
        self.source_sink += w

    def sum_w(self, i: int) -> float:
        """Total weight of the edges incident to node i, t-links included."""
        return self._sum_w[i]

    def capacity(self, u, v) -> float:
        """Current residual capacity of the arc u -> v."""
        if not self._residual.has_edge(u, v):
            return 0.0
        return self._residual[u][v]["capacity"] / CAPACITY_SCALE

    def _add_capacity(self, u, v, capacity: float) -> None:
        units = int(round(capacity * CAPACITY_SCALE))
        if units <= 0:
            return
        self._source_side = None
        if self._residual.has_edge(u, v):
            self._residual[u][v]["capacity"] += units
        else:
            self._residual.add_edge(u, v, capacity=units)

    # ------------------------------------------------------------------
    # Solving
    # ------------------------------------------------------------------

    def solve_region(self, nodes):
        """
        Solves max-flow restricted to `nodes` and the two terminals.

        The residual network is only read, so disjoint node sets can be
        solved concurrently. The result is merged with `apply_flow`.

        Returns:
        --------
        (flow_value, flow_dict)
            Flow value and per-arc flows, both in capacity units.
        """
        view = self._residual.subgraph(set(nodes) | {SOURCE, SINK})
        return nx.maximum_flow(view, SOURCE, SINK, flow_func=self.flow_func)

    def apply_flow(self, flow_value: int, flow_dict: dict) -> None:
        """Pushes a flow found on (part of) the residual network."""
        for u, targets in flow_dict.items():
            for v, f in targets.items():
                if f <= 0:
                    continue
                self._residual[u][v]["capacity"] -= f
                if self._residual.has_edge(v, u):
                    self._residual[v][u]["capacity"] += f
                else:
                    self._residual.add_edge(v, u, capacity=f)
        self._pushed += flow_value
        self._source_side = None

    def max_flow(self) -> float:
        """
        Augments the residual network to a maximum flow and records the
        minimum cut.

        Returns:
        --------
        float
            Total flow value, including the source-sink correction.
        """
        value, flow_dict = nx.maximum_flow(self._residual, SOURCE, SINK, flow_func=self.flow_func)
        self.apply_flow(value, flow_dict)

        unsaturated = nx.subgraph_view(
            self._residual,
            filter_edge=lambda u, v: self._residual[u][v]["capacity"] > 0)
        self._source_side = nx.descendants(unsaturated, SOURCE) | {SOURCE}
        logger.debug("max-flow on %d nodes: %.4f (last pass %.4f)",
                     self.node_count, self.total_flow, value / CAPACITY_SCALE)
        return self.total_flow

    @property
    def total_flow(self) -> float:
        return self.flow + self._pushed / CAPACITY_SCALE + self.source_sink

    def in_source_segment(self, i: int) -> bool:
        """Whether node i is on the source (foreground) side of the cut."""
        if self._source_side is None:
            raise RuntimeError("max_flow must be called before querying the cut")
        return i in self._source_side
