"""Unit tests for the command-line interfaces."""

import pytest
import numpy as np
import pandas as pd
from click.testing import CliRunner

from patchseq_mapper.cli import cli
from patchseq_mapper.core.integration.__main__ import main as module_main
from patchseq_mapper.core.integration.__main__ import parse_args, build_config, setup_logging


@pytest.fixture
def h5ad_inputs(tmp_path, ref_query_adata):
    ref_adata, query_adata = ref_query_adata
    ref_path = tmp_path / "reference.h5ad"
    query_path = tmp_path / "query.h5ad"
    ref_adata.write_h5ad(ref_path)
    query_adata.write_h5ad(query_path)
    return ref_path, query_path


class TestMapCommand:
    """Tests for `patchseq-mapper map`."""

    def test_map(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test a full mapping run writes predictions and markers."""
        ref_path, query_path = h5ad_inputs
        out = tmp_path / "mapped"
        result = CliRunner().invoke(cli, [
            "map",
            "--reference", str(ref_path),
            "--query", str(query_path),
            "--out", str(out),
            "--config", str(sample_config_yaml),
        ])
        assert result.exit_code == 0, result.output
        assert "Mapping complete" in result.output
        predictions = pd.read_csv(out / "predictions.csv")
        assert len(predictions) == 90
        assert (out / "markers.csv").exists()
        assert (out / "run_summary.yaml").exists()

    def test_map_overrides(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test command-line options override the config file."""
        import yaml

        ref_path, query_path = h5ad_inputs
        out = tmp_path / "mapped"
        result = CliRunner().invoke(cli, [
            "map",
            "-r", str(ref_path),
            "-q", str(query_path),
            "-o", str(out),
            "-c", str(sample_config_yaml),
            "--seed", "99",
            "--n-dims", "3",
            "--skip-markers",
        ])
        assert result.exit_code == 0, result.output
        with open(out / "run_summary.yaml") as f:
            summary = next(yaml.safe_load_all(f))
        assert summary["seed"] == 99
        assert summary["n_dims"] == 3
        assert not (out / "markers.csv").exists()

    def test_map_error_exit(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test mapping errors exit non-zero with the cause."""
        ref_path, query_path = h5ad_inputs
        result = CliRunner().invoke(cli, [
            "map",
            "--reference", str(ref_path),
            "--query", str(query_path),
            "--out", str(tmp_path / "mapped"),
            "--config", str(sample_config_yaml),
            "--n-dims", "500",
        ])
        assert result.exit_code == 1
        assert "Mapping failed" in result.output

    def test_missing_input(self, tmp_path):
        """Test a nonexistent input file is a usage error."""
        result = CliRunner().invoke(cli, [
            "map",
            "--reference", str(tmp_path / "missing.h5ad"),
            "--query", str(tmp_path / "missing.h5ad"),
            "--out", str(tmp_path),
        ])
        assert result.exit_code == 2


class TestMarkersCommand:
    """Tests for `patchseq-mapper markers`."""

    def test_markers_from_predictions(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test markers are selected against a predictions table."""
        ref_path, query_path = h5ad_inputs
        out = tmp_path / "mapped"
        runner = CliRunner()
        mapped = runner.invoke(cli, [
            "map", "-r", str(ref_path), "-q", str(query_path), "-o", str(out),
            "-c", str(sample_config_yaml), "--skip-markers",
        ])
        assert mapped.exit_code == 0, mapped.output

        result = runner.invoke(cli, [
            "markers",
            "-r", str(ref_path),
            "-q", str(query_path),
            "-o", str(out),
            "-c", str(sample_config_yaml),
            "--predictions", str(out / "predictions.csv"),
            "--must-include", "Gene150",
        ])
        assert result.exit_code == 0, result.output
        markers = pd.read_csv(out / "markers.csv")
        assert markers["gene"].iloc[-1] == "Gene150"
        assert len(markers) == 16

    def test_markers_with_query_labels(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test the query's own labels are used when no predictions are given."""
        ref_path, query_path = h5ad_inputs
        result = CliRunner().invoke(cli, [
            "markers",
            "-r", str(ref_path),
            "-q", str(query_path),
            "-o", str(tmp_path),
            "-c", str(sample_config_yaml),
        ])
        assert result.exit_code != 0


class TestModuleRunner:
    """Tests for `python -m patchseq_mapper.core.integration`."""

    def test_parse_args_defaults(self, tmp_path):
        """Test optional arguments default to config values."""
        args = parse_args(["-r", "ref.h5ad", "-q", "q.h5ad", "-o", str(tmp_path)])
        config = build_config(args)
        assert config.projection.method == "cca"
        assert args.non_target is None
        assert not args.skip_markers

    def test_build_config_overrides(self, tmp_path, sample_config_yaml):
        """Test overrides are applied on top of the YAML file."""
        args = parse_args([
            "-r", "ref.h5ad", "-q", "q.h5ad", "-o", str(tmp_path),
            "--config", str(sample_config_yaml),
            "--method", "pca", "--seed", "5", "--coords-key", "X_tsne",
        ])
        config = build_config(args)
        assert config.projection.method == "pca"
        assert config.random_seed == 5
        assert config.transfer.coords_key == "X_tsne"
        assert config.anchors.k_anchor == 10

    def test_main(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test the module runner writes all outputs."""
        ref_path, query_path = h5ad_inputs
        out = tmp_path / "module_out"
        module_main([
            "-r", str(ref_path), "-q", str(query_path), "-o", str(out),
            "-c", str(sample_config_yaml), "--non-target", "Sncg",
        ])
        assert (out / "predictions.csv").exists()
        assert (out / "markers.csv").exists()

    def test_main_error_exit(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test mapping errors exit with status 1."""
        ref_path, query_path = h5ad_inputs
        with pytest.raises(SystemExit) as excinfo:
            module_main([
                "-r", str(ref_path), "-q", str(query_path), "-o", str(tmp_path),
                "-c", str(sample_config_yaml), "--n-dims", "500",
            ])
        assert excinfo.value.code == 1

    def test_main_writes_run_log(self, h5ad_inputs, sample_config_yaml, tmp_path):
        """Test --log-dir produces a timestamped mapping log."""
        ref_path, query_path = h5ad_inputs
        log_dir = tmp_path / "logs"
        module_main([
            "-r", str(ref_path), "-q", str(query_path), "-o", str(tmp_path / "out"),
            "-c", str(sample_config_yaml), "--skip-markers", "--log-dir", str(log_dir),
        ])
        logs = list(log_dir.glob("mapping_*.log"))
        assert len(logs) == 1
        assert "Mapped" in logs[0].read_text()

    def test_setup_logging_is_repeatable(self, tmp_path):
        """Test repeated setup keeps one console and one file handler."""
        import logging

        setup_logging(log_dir=tmp_path)
        logger = setup_logging(verbose=True, log_dir=tmp_path)
        kinds = [type(h) for h in logger.handlers]
        assert kinds.count(logging.FileHandler) == 1
        assert kinds.count(logging.StreamHandler) == 1
        assert logger.level == logging.DEBUG
