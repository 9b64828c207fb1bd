"""Pytest configuration and shared fixtures for PatchSeq-Mapper tests."""

import sys
from pathlib import Path

import pytest
import numpy as np

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from patchseq_mapper.config import MappingConfig
from patchseq_mapper.core.datasets import Dataset

# Import mock data generators
from tests.fixtures import (
    create_glia_reference,
    create_reference_query,
)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def small_config() -> MappingConfig:
    """Configuration sized for the 3-cluster synthetic datasets."""
    config = MappingConfig()
    config.genes.min_genes = 20
    config.projection.n_dims = 2
    config.anchors.k_anchor = 10
    config.anchors.k_filter = 10
    config.transfer.k_weight = 20
    return config


@pytest.fixture
def sample_config_yaml(tmp_path) -> Path:
    """Write a mapping configuration file with a top-level mapping section."""
    import yaml

    config = {
        "mapping": {
            "random_seed": 7,
            "genes": {"min_genes": 20},
            "projection": {"n_dims": 2},
            "anchors": {"k_anchor": 10, "k_filter": 10},
            "transfer": {"k_weight": 20},
        }
    }
    path = tmp_path / "mapping.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(config, f)
    return path


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def ref_query_adata():
    """Reference (150 cells) and query (90 cells) over 200 genes, 3 clusters."""
    return create_reference_query()


@pytest.fixture
def reference(ref_query_adata) -> Dataset:
    """Labeled reference Dataset."""
    return Dataset("facs", ref_query_adata[0], require_labels=True)


@pytest.fixture
def query(ref_query_adata) -> Dataset:
    """Unlabeled query Dataset."""
    return Dataset("patchseq", ref_query_adata[1])


@pytest.fixture
def labeled_query(ref_query_adata) -> Dataset:
    """Query Dataset labeled with its ground truth."""
    return Dataset("patchseq", ref_query_adata[1], label_key="true_label")


@pytest.fixture
def glia_reference() -> Dataset:
    """Reference with a glial (non-target) cluster."""
    return Dataset("glia", create_glia_reference(), require_labels=True)


@pytest.fixture
def rng() -> np.random.RandomState:
    """Seeded random state for ad-hoc arrays."""
    return np.random.RandomState(0)
