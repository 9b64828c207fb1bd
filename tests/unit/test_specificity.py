"""Unit tests for beta-score specificity."""

import pytest
import numpy as np
import pandas as pd

from patchseq_mapper.config import MappingConfig
from patchseq_mapper.core.genes import (
    NEUTRAL_SCORE,
    SpecificityScorer,
    SpecificityTable,
    beta_score,
)
from patchseq_mapper.exceptions import UndefinedScoreError
from tests.fixtures import marker_genes


class TestBetaScore:
    """Tests for the single-vector beta score."""

    def test_one_hot_is_max(self):
        """Test an on/off vector scores 1."""
        assert beta_score([1.0, 0.0, 0.0, 0.0]) == pytest.approx(1.0)

    def test_uniform_is_zero(self):
        """Test uniform vectors score 0 regardless of level."""
        assert beta_score([0.0, 0.0, 0.0]) == pytest.approx(0.0)
        assert beta_score([1.0, 1.0, 1.0]) == pytest.approx(0.0)
        assert beta_score([0.4, 0.4, 0.4]) == pytest.approx(0.0)

    def test_mid_range_penalized(self):
        """Test mid-range proportions score below a clean on/off pattern."""
        assert beta_score([0.5, 0.0, 0.0]) < beta_score([1.0, 0.0, 0.0])
        assert beta_score([0.5, 0.0, 0.0]) == pytest.approx(0.5)

    def test_bounded(self, rng):
        """Test random vectors stay within [0, 1]."""
        for _ in range(50):
            score = beta_score(rng.uniform(size=rng.randint(2, 10)))
            assert 0.0 <= score <= 1.0

    def test_nan_clusters_ignored(self):
        """Test empty (NaN) clusters do not contribute."""
        assert beta_score([1.0, np.nan, 0.0]) == pytest.approx(beta_score([1.0, 0.0]))

    def test_undefined(self):
        """Test fewer than two populated clusters raises."""
        with pytest.raises(UndefinedScoreError):
            beta_score([1.0])
        with pytest.raises(UndefinedScoreError):
            beta_score([np.nan, 0.3, np.nan])


class TestSpecificityScorer:
    """Tests for matrix scoring and ranking."""

    def _proportions(self, rows: dict) -> pd.DataFrame:
        n = len(next(iter(rows.values())))
        return pd.DataFrame.from_dict(
            rows, orient="index", columns=[f"C{i}" for i in range(n)]
        )

    def test_score_matches_single(self, rng):
        """Test vectorized scores equal the per-vector function."""
        props = pd.DataFrame(
            rng.uniform(size=(25, 4)),
            index=[f"g{i}" for i in range(25)],
            columns=list("ABCD"),
        )
        table = SpecificityScorer().score(props)
        expected = [beta_score(row) for row in props.to_numpy()]
        np.testing.assert_allclose(table.beta.to_numpy(), expected)

    def test_parallel_chunks_match(self, rng):
        """Test chunked parallel scoring equals serial scoring."""
        props = pd.DataFrame(rng.uniform(size=(53, 5)), index=[f"g{i}" for i in range(53)])
        config = MappingConfig()
        config.specificity.chunk_size = 10
        serial = SpecificityScorer(config).score(props, n_jobs=1)
        parallel = SpecificityScorer(config).score(props, n_jobs=2)
        pd.testing.assert_series_equal(serial.beta, parallel.beta)
        pd.testing.assert_series_equal(serial.variance, parallel.variance)

    def test_ranking_tie_breaks(self):
        """Test ties on beta break by variance, then gene id."""
        props = self._proportions({
            "zeta": [1.0, 0.0, 0.0, 0.0],
            "alpha": [1.0, 0.0, 0.0, 0.0],
            "wide": [1.0, 1.0, 0.0, 0.0],
            "flat": [0.2, 0.2, 0.2, 0.2],
        })
        table = SpecificityScorer().score(props)
        assert table.ranked().tolist() == ["wide", "alpha", "zeta", "flat"]
        assert table.top_genes(2) == ["wide", "alpha"]

    def test_undefined_resolved_to_neutral(self):
        """Test genes with one populated cluster get the neutral score."""
        props = self._proportions({"g1": [1.0, np.nan], "g2": [1.0, 0.0]})
        table = SpecificityScorer().score(props)
        assert table.beta["g1"] == NEUTRAL_SCORE
        assert table.undefined == ["g1"]

    def test_undefined_strict(self):
        """Test strict mode raises on undefined scores."""
        props = self._proportions({"g1": [1.0, np.nan], "g2": [1.0, 0.0]})
        with pytest.raises(UndefinedScoreError):
            SpecificityScorer().score(props, strict=True)

    def test_out_of_range_proportions(self):
        """Test proportions outside [0, 1] are rejected."""
        with pytest.raises(ValueError):
            SpecificityScorer().score(self._proportions({"g": [1.5, 0.0]}))

    def test_assigned_cluster(self):
        """Test the assigned cluster is the highest-proportion cluster."""
        table = SpecificityScorer().score(
            self._proportions({"g1": [0.1, 0.9, 0.0], "g2": [0.8, 0.0, 0.1]})
        )
        assert table.assigned_cluster.tolist() == ["C1", "C0"]
        assert table.scores.shape == (2, 3)

    def test_restrict(self):
        """Test restricting to fewer clusters re-scores genes."""
        scorer = SpecificityScorer()
        table = scorer.score(self._proportions({"g": [1.0, 1.0, 0.0]}))
        restricted = scorer.restrict(table, ["C0", "C1"])
        assert restricted.clusters == ["C0", "C1"]
        assert restricted.beta["g"] == pytest.approx(0.0)
        with pytest.raises(KeyError):
            scorer.restrict(table, ["C9"])

    def test_to_frame(self):
        """Test the flat table carries prefixed proportion columns."""
        table = SpecificityScorer().score(self._proportions({"g": [1.0, 0.0]}))
        frame = table.to_frame()
        assert list(frame.columns) == [
            "beta", "variance", "assigned_cluster", "prop_C0", "prop_C1",
        ]
        assert frame.index.name == "gene"


class TestSpecificityOnDatasets:
    """Tests for scoring labeled datasets."""

    def test_markers_rank_first(self, reference):
        """Test cluster markers outrank background genes."""
        scorer = SpecificityScorer()
        table = scorer.run(reference, list(reference.genes))
        markers = {g for genes in marker_genes().values() for g in genes}
        assert set(table.top_genes(60)) == markers
        assert table.clusters == reference.label_set

    def test_marker_assignment(self, reference):
        """Test each marker is assigned to its own cluster."""
        table = SpecificityScorer().run(reference, list(reference.genes))
        for cluster, genes in marker_genes().items():
            assert (table.assigned_cluster.loc[genes] == cluster).all()

    def test_empty_cluster_is_nan(self, reference):
        """Test requesting a cluster without cells yields NaN proportions."""
        props = SpecificityScorer().compute_proportions(
            reference, ["Gene000"], clusters=["Lamp5", "Vip"]
        )
        assert np.isnan(props.loc["Gene000", "Vip"])
        assert props.loc["Gene000", "Lamp5"] > 0.9

    def test_idempotent(self, reference):
        """Test repeated runs give identical tables."""
        scorer = SpecificityScorer()
        genes = list(reference.genes)
        first = scorer.run(reference, genes)
        second = scorer.run(reference, genes)
        pd.testing.assert_series_equal(first.beta, second.beta)
        assert first.ranked().equals(second.ranked())
