"""Unit tests for the shared embedding."""

import pytest
import numpy as np
import pandas as pd

from patchseq_mapper.config import MappingConfig
from patchseq_mapper.core.integration import SharedEmbedding, SharedSpaceProjector
from patchseq_mapper.core.integration.projection import l2_normalize_rows, scale_genes
from patchseq_mapper.exceptions import DimensionalityError


@pytest.fixture
def genes(reference):
    return list(reference.genes)


class TestScaling:
    """Tests for the scaling helpers."""

    def test_scale_genes(self, rng):
        """Test columns are z-scored and clipped."""
        m = rng.normal(5, 2, (40, 6))
        scaled = scale_genes(m)
        np.testing.assert_allclose(scaled.mean(axis=0), 0, atol=1e-10)
        np.testing.assert_allclose(scaled.std(axis=0), 1, atol=1e-10)
        assert np.abs(scale_genes(m, clip=0.5)).max() <= 0.5

    def test_constant_gene(self):
        """Test a constant gene scales to zero."""
        scaled = scale_genes(np.ones((5, 2)))
        assert not scaled.any()

    def test_l2_normalize_rows(self):
        """Test rows get unit norm and zero rows stay zero."""
        out = l2_normalize_rows(np.array([[3.0, 4.0], [0.0, 0.0]]))
        np.testing.assert_allclose(out, [[0.6, 0.8], [0.0, 0.0]])


class TestDimensionCheck:
    """Tests for embedding rank limits."""

    def test_max_dims(self):
        """Test the limit is the smallest dimension minus one."""
        assert SharedSpaceProjector.max_dims(150, 90, 200) == 89
        assert SharedSpaceProjector.max_dims(150, 90, 20) == 19

    def test_too_many_dims(self, reference, query, genes):
        """Test n_dims beyond the rank raises before projecting."""
        with pytest.raises(DimensionalityError) as excinfo:
            SharedSpaceProjector().project(reference, query, genes, n_dims=90)
        assert excinfo.value.max_allowed == 89

    def test_zero_dims(self, reference, query, genes):
        """Test n_dims below one raises."""
        with pytest.raises(DimensionalityError):
            SharedSpaceProjector().project(reference, query, genes, n_dims=0)

    def test_unknown_method(self, reference, query, genes):
        """Test unsupported methods raise ValueError."""
        with pytest.raises(ValueError):
            SharedSpaceProjector().project(reference, query, genes, n_dims=2, method="umap")


class TestCCAProjection:
    """Tests for the correlation-based projection."""

    def test_shapes_and_metadata(self, reference, query, genes, small_config):
        """Test embedding shapes, cell order and recorded parameters."""
        emb = SharedSpaceProjector(small_config).project(reference, query, genes, n_dims=5)
        assert isinstance(emb, SharedEmbedding)
        assert emb.reference.shape == (150, 5)
        assert emb.query.shape == (90, 5)
        assert emb.n_dims == 5
        assert emb.method == "cca"
        assert emb.seed == small_config.random_seed
        assert list(emb.reference_cells) == list(reference.cell_ids)
        assert emb.genes == genes

    def test_unit_norm_rows(self, reference, query, genes):
        """Test rows are L2-normalized."""
        emb = SharedSpaceProjector().project(reference, query, genes, n_dims=4)
        np.testing.assert_allclose(np.linalg.norm(emb.reference, axis=1), 1.0)
        np.testing.assert_allclose(np.linalg.norm(emb.query, axis=1), 1.0)

    def test_deterministic(self, reference, query, genes):
        """Test the same seed reproduces the embedding."""
        projector = SharedSpaceProjector()
        a = projector.project(reference, query, genes, n_dims=4, random_seed=11)
        b = projector.project(reference, query, genes, n_dims=4, random_seed=11)
        np.testing.assert_allclose(a.reference, b.reference)
        np.testing.assert_allclose(a.query, b.query)

    def test_clusters_align(self, reference, query, genes, ref_query_adata):
        """Test matching clusters land together across datasets."""
        emb = SharedSpaceProjector().project(reference, query, genes, n_dims=2)
        ref_labels = reference.labels.to_numpy()
        true_labels = ref_query_adata[1].obs["true_label"].to_numpy()
        for label in reference.label_set:
            ref_center = emb.reference[ref_labels == label].mean(axis=0)
            query_center = emb.query[true_labels == label].mean(axis=0)
            assert np.dot(ref_center, query_center) > 0.8

    def test_to_frame(self, reference, query, genes):
        """Test the stacked frame labels each row with its dataset."""
        emb = SharedSpaceProjector().project(reference, query, genes, n_dims=3)
        frame = emb.to_frame()
        assert frame.shape == (240, 4)
        assert frame["dataset"].value_counts().to_dict() == {"reference": 150, "query": 90}

    def test_swapped(self, reference, query, genes):
        """Test swapping exchanges the two datasets."""
        emb = SharedSpaceProjector().project(reference, query, genes, n_dims=3)
        swapped = emb.swapped()
        assert swapped.reference is emb.query
        assert list(swapped.query_cells) == list(emb.reference_cells)


class TestPCAProjection:
    """Tests for PCA on the merged matrix."""

    def test_pca_shapes(self, reference, query, genes):
        """Test PCA returns both datasets in one frame."""
        config = MappingConfig()
        config.projection.method = "pca"
        emb = SharedSpaceProjector(config).project(reference, query, genes, n_dims=5)
        assert emb.method == "pca"
        assert emb.reference.shape == (150, 5)
        assert emb.query.shape == (90, 5)
        assert len(emb.singular_values) == 5
