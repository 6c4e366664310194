"""
Tests for graph construction and node merging in src/graph.py.

The reduced graph must have exactly the maximum flow of the full
per-pixel graph; this is checked on random images and label masks.
"""

import numpy as np
import pytest

from affinity import calc_beta, calc_n_weights
from flow import FlowGraph
from gmm import GaussianMixtureModel
from graph import NO_VTX_FOUND, GraphBuilder, _BuildContext
from seed import (GC_BGD, GC_FGD, GC_PR_BGD, JOINED_SINK, JOINED_SOURCE, init_mask_with_rect,
                  is_probable)


def _build(img, mask, bgd_gmm, fgd_gmm, reduce):
    weights = calc_n_weights(img, calc_beta(img))
    return GraphBuilder(reduce=reduce).build_graph(img, mask, bgd_gmm, fgd_gmm, weights)


class TestFlowEquivalence:
    """The reduced and the full graph have the same maximum flow."""

    @pytest.mark.parametrize("shape", [(4, 4), (8, 8), (6, 9)])
    @pytest.mark.parametrize("seed", [0, 1, 2])
    @pytest.mark.parametrize("blocky", [True, False])
    def test_same_max_flow(self, random_scene, fitted_models, shape, seed, blocky):
        img, mask = random_scene(*shape, seed=seed, blocky=blocky)
        bgd_gmm, fgd_gmm = fitted_models(img, mask)

        full, _ = _build(img, mask, bgd_gmm, fgd_gmm, reduce=False)
        reduced, _ = _build(img, mask, bgd_gmm, fgd_gmm, reduce=True)

        assert reduced.node_count <= full.node_count
        assert reduced.max_flow() == pytest.approx(full.max_flow(), rel=1e-9, abs=1e-5)

    def test_same_max_flow_on_block_image(self, block_image, block_rect, fitted_models):
        mask = init_mask_with_rect(None, block_image.shape[:2], block_rect)
        bgd_gmm, fgd_gmm = fitted_models(block_image, mask)

        full, _ = _build(block_image, mask, bgd_gmm, fgd_gmm, reduce=False)
        reduced, _ = _build(block_image, mask, bgd_gmm, fgd_gmm, reduce=True)

        assert reduced.max_flow() == pytest.approx(full.max_flow(), rel=1e-9, abs=1e-5)


class TestBuildGraph:
    """Tests for the node layout produced by build_graph."""

    def test_full_graph_has_a_node_per_pixel(self, random_scene, fitted_models):
        img, mask = random_scene(5, 7, seed=3)
        bgd_gmm, fgd_gmm = fitted_models(img, mask)

        graph, pxl2vtx = _build(img, mask, bgd_gmm, fgd_gmm, reduce=False)

        assert graph.node_count == 35
        assert sorted(pxl2vtx.ravel().tolist()) == list(range(35))

    def test_reduced_graph_layout(self, random_scene, fitted_models):
        img, mask = random_scene(8, 8, seed=5)
        bgd_gmm, fgd_gmm = fitted_models(img, mask)

        graph, pxl2vtx = _build(img, mask, bgd_gmm, fgd_gmm, reduce=True)

        assert (pxl2vtx[mask == GC_BGD] == JOINED_SINK).all()
        assert (pxl2vtx[mask == GC_FGD] == JOINED_SOURCE).all()
        assert (pxl2vtx != NO_VTX_FOUND).all()
        assert graph.node_count <= is_probable(mask).sum()

        for i in range(graph.node_count):
            pixels = graph.pixels(i)
            assert pixels
            assert pixels == sorted(pixels)
            for y, x in pixels:
                assert pxl2vtx[y, x] == i
        in_nodes = sum(len(graph.pixels(i)) for i in range(graph.node_count))
        assert in_nodes == (pxl2vtx >= 0).sum()

    def test_dominant_data_term_joins_terminal(self, block_image, block_rect, fitted_models):
        mask = init_mask_with_rect(None, block_image.shape[:2], block_rect)
        bgd_gmm, fgd_gmm = fitted_models(block_image, mask)

        graph, pxl2vtx = _build(block_image, mask, bgd_gmm, fgd_gmm, reduce=True)

        # the block colour has no background support at all
        assert (pxl2vtx[3:7, 3:7] == JOINED_SOURCE).all()
        assert (pxl2vtx[0, :] == JOINED_SINK).all()
        assert graph.node_count <= 48


class TestTerminalWeights:
    """Tests for GraphBuilder.terminal_weights."""

    def test_weights_are_non_negative(self, random_scene, fitted_models):
        img, mask = random_scene(6, 6, seed=7, blocky=False)
        bgd_gmm, fgd_gmm = fitted_models(img, mask)
        builder = GraphBuilder()

        to_source, to_sink, offset = builder.terminal_weights(img, mask, bgd_gmm, fgd_gmm)

        assert (to_source >= 0).all() and (to_sink >= 0).all()
        assert offset <= 0
        assert (to_sink[mask == GC_BGD] == builder.lam).all()
        assert (to_source[mask == GC_BGD] == 0).all()
        assert (to_source[mask == GC_FGD] == builder.lam).all()
        probable = is_probable(mask)
        assert (np.minimum(to_source, to_sink)[probable] >= 0).all()

    def test_lambda_exceeds_all_n_links(self):
        builder = GraphBuilder(gamma=50.0)

        assert builder.lam == 450.0
        assert builder.lam > 4 * 50.0 + 4 * 50.0 / np.sqrt(2)


class TestJoinSearch:
    """Tests for the helpers behind the join decision."""

    def test_pending_weights_match_unvisited_edges(self):
        rng = np.random.default_rng(11)
        img = rng.integers(0, 256, size=(5, 6, 3)).astype(np.uint8)
        weights = calc_n_weights(img, calc_beta(img))
        rows, cols = weights.shape
        ctx = _BuildContext(weights, np.zeros((rows, cols)), np.zeros((rows, cols)))

        edges = []
        for y in range(rows):
            for x in range(cols):
                for neighbour in weights.backward(y, x):
                    if neighbour is not None:
                        edges.append(((y, x), neighbour[0], neighbour[1]))

        for p_index in range(rows * cols):
            p = divmod(p_index, cols)
            for q_index in range(p_index):
                q = divmod(q_index, cols)
                expected = 0.0
                for a, b, w in edges:
                    other = b if a == q else a if b == q else None
                    if other is not None and ctx.index(other) >= p_index:
                        expected += w
                assert GraphBuilder._pending_w(p, q, ctx) == pytest.approx(expected), (p, q)

    def test_no_join_without_weight(self):
        weights = calc_n_weights(np.zeros((3, 3, 3), dtype=np.uint8), 0.0, gamma=0.0)
        ctx = _BuildContext(weights, np.zeros((3, 3)), np.zeros((3, 3)))

        assert GraphBuilder()._search_join((1, 1), ctx, FlowGraph()) == NO_VTX_FOUND

    def test_strong_link_to_background_joins_sink(self):
        """
        A probable pixel whose links into the background terminal outweigh
        half of its total weight is merged into it, however much weight the
        terminal has collected already.
        """
        color = np.array([100.0, 100.0, 100.0])
        img = np.full((3, 6, 3), 100, dtype=np.uint8)
        mask = np.full((3, 6), GC_PR_BGD, dtype=np.uint8)
        mask[0, :] = GC_BGD
        mask[1, 0] = GC_BGD

        def model(mean):
            vector = np.concatenate([[1.0, 0, 0, 0, 0], np.tile(mean, 5), np.tile(np.eye(3).ravel(), 5)])
            return GaussianMixtureModel(vector)

        # background density 1, foreground density exp(-0.5): t-links (0, 0.5)
        bgd_gmm = model(color)
        fgd_gmm = model(color + [1.0, 0.0, 0.0])

        reduced, pxl2vtx = _build(img, mask, bgd_gmm, fgd_gmm, reduce=True)
        full, _ = _build(img, mask, bgd_gmm, fgd_gmm, reduce=False)

        # links to (1, 0), (0, 0), (0, 1), (0, 2) plus the sink t-link against
        # half of the 8 uniform n-links plus the t-link
        s = 2 * 50.0 + 2 * 50.0 / np.sqrt(2) + 0.5
        assert s > 0.5 * (4 * 50.0 + 4 * 50.0 / np.sqrt(2) + 0.5)
        assert pxl2vtx[1, 1] == JOINED_SINK
        assert reduced.max_flow() == pytest.approx(full.max_flow(), rel=1e-9, abs=1e-5)
