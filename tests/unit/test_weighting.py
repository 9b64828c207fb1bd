"""Unit tests for anchor weighting."""

import pytest
import numpy as np
import pandas as pd

from patchseq_mapper.core.integration import AnchorFinder, AnchorSet, AnchorWeighter
from patchseq_mapper.core.integration.weighting import neighbor_matrix
from tests.unit.test_anchors import make_embedding


class TestNeighborMatrix:
    """Tests for the within-dataset neighbor matrix."""

    def test_excludes_self(self):
        """Test each row has k neighbors and no self entry."""
        points = np.array([[0.0], [1.0], [2.5], [10.0]])
        m = neighbor_matrix(points, k=2)
        assert m.shape == (4, 4)
        assert not m.diagonal().any()
        assert np.asarray(m.sum(axis=1)).ravel().tolist() == [2, 2, 2, 2]
        assert sorted(m[0].indices.tolist()) == [1, 2]

    def test_include_self(self):
        """Test include_self adds the diagonal on top of k neighbors."""
        m = neighbor_matrix(np.arange(5, dtype=float)[:, None], k=1, include_self=True)
        assert m.diagonal().all()
        assert np.asarray(m.sum(axis=1)).ravel().tolist() == [2, 2, 2, 2, 2]

    def test_k_capped(self):
        """Test k is capped at n - 1."""
        m = neighbor_matrix(np.arange(3, dtype=float)[:, None], k=10)
        assert np.asarray(m.sum(axis=1)).ravel().tolist() == [2, 2, 2]


class TestAnchorWeighter:
    """Tests for AnchorWeighter.weight."""

    def test_fully_corroborated(self, rng):
        """Test anchors inside one tight shared neighborhood weigh 1."""
        ref = rng.normal(0, 0.01, (4, 2))
        query = rng.normal(0, 0.01, (4, 2))
        emb = make_embedding(ref, query)
        anchors = AnchorFinder().find(emb, k=4)
        assert len(anchors) == 16
        weighted = AnchorWeighter().weight(anchors, emb, k_filter=3)
        np.testing.assert_allclose(weighted.weights, 1.0)
        assert weighted.weighted

    def test_isolated_anchor(self):
        """Test an anchor with no corroborating neighbors weighs 0."""
        ref = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
        query = np.array([[0.0, 0.1], [1.0, 0.1], [2.0, 0.1]])
        emb = make_embedding(ref, query)
        pairs = pd.DataFrame({
            "ref_index": [0],
            "query_index": [0],
            "ref_cell": ["r0"],
            "query_cell": ["q0"],
            "score": [1.0],
            "weight": [1.0],
        })
        anchors = AnchorSet(pairs=pairs, k=1, n_reference=3, n_query=3)
        weighted = AnchorWeighter().weight(anchors, emb, k_filter=2)
        assert weighted.weights.tolist() == [0.0]

    def test_reference_endpoint_counts_in_its_neighborhood(self):
        """Test the anchor's own reference cell is part of its reference neighborhood."""
        ref = np.array([[0.0, 0.0], [5.0, 0.0]])
        query = np.array([[0.0, 0.1], [0.0, 0.2], [5.0, 0.1]])
        emb = make_embedding(ref, query)
        pairs = pd.DataFrame({
            "ref_index": [0, 0],
            "query_index": [0, 1],
            "ref_cell": ["r0", "r0"],
            "query_cell": ["q0", "q1"],
            "score": [1.0, 1.0],
            "weight": [1.0, 1.0],
        })
        anchors = AnchorSet(pairs=pairs, k=1, n_reference=2, n_query=3)
        weighted = AnchorWeighter().weight(anchors, emb, k_filter=1)
        # A = {r0} via the neighboring query cell, B = {r0, r1}
        np.testing.assert_allclose(weighted.weights, [0.5, 0.5])

    def test_zero_filter_neighbors(self, rng):
        """Test k_filter=0 leaves no support for any anchor."""
        emb = make_embedding(rng.normal(size=(20, 3)), rng.normal(size=(15, 3)))
        anchors = AnchorFinder().find(emb, k=5)
        weighted = AnchorWeighter().weight(anchors, emb, k_filter=0)
        assert (weighted.weights == 0).all()

    def test_bounds_and_pairs_preserved(self, rng):
        """Test weights lie in [0, 1] and pairs and scores are untouched."""
        emb = make_embedding(rng.normal(size=(60, 4)), rng.normal(size=(45, 4)))
        anchors = AnchorFinder().find(emb, k=8)
        weighted = AnchorWeighter().weight(anchors, emb, k_filter=10)
        assert len(weighted) == len(anchors)
        assert ((weighted.weights >= 0) & (weighted.weights <= 1)).all()
        pd.testing.assert_series_equal(weighted.pairs["score"], anchors.pairs["score"])
        assert weighted.ref_index.tolist() == anchors.ref_index.tolist()
        assert not anchors.weighted

    def test_structured_data_weighs_higher(self, reference, query, small_config):
        """Test anchors in clustered data get substantial support."""
        from patchseq_mapper.core.integration import SharedSpaceProjector

        emb = SharedSpaceProjector(small_config).project(reference, query, list(reference.genes))
        anchors = AnchorFinder(small_config).find(emb)
        weighted = AnchorWeighter(small_config).weight(anchors, emb)
        assert np.median(weighted.weights) > 0.1

    def test_empty_anchor_set(self, rng):
        """Test weighting an empty set returns an empty weighted set."""
        emb = make_embedding(rng.normal(size=(5, 2)), rng.normal(size=(5, 2)))
        weighted = AnchorWeighter().weight(AnchorSet(n_reference=5, n_query=5), emb)
        assert weighted.is_empty
        assert weighted.weighted
