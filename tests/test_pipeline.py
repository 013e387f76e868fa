"""Tests for staged pipeline orchestration and YAML configuration."""

import pytest
import pandas as pd

from abundance_table import (
    SAMPLE,
    DegenerateSample,
    StageFailed,
    UnknownColumn,
    build,
)
from abundance_filter import keep_abundant
from scaling import SCALED_COLUMN, ScalingMethod, scale_abundance
from stages import DifferentialMethod, ReductionMethod, reduce_dimensions
from pipeline import (
    DEFAULT_CONFIG_PATH,
    TidyAbundancePipeline,
    load_pipeline_config,
)


def _write_config(path, text):
    path.write_text(text)
    return path


class TestTidyAbundancePipeline:
    def test_steps_run_in_order(self, pasilla_table):
        pipeline = (
            TidyAbundancePipeline()
            .add_step("filter", keep_abundant, factor_of_interest="condition")
            .add_step("scale", scale_abundance)
            .add_step("pca", reduce_dimensions, top=100)
        )
        result = pipeline.run(pasilla_table)
        assert SCALED_COLUMN in result.pair_columns
        assert "PC1" in result.sample_columns
        assert [name for name, _, _ in pipeline.history] == ["input", "filter", "scale", "pca"]
        assert pipeline.history[1][2] < pipeline.history[0][2]

    def test_input_not_modified(self, four_sample_table):
        before = four_sample_table.to_frame()
        TidyAbundancePipeline().add_step("scale", scale_abundance).run(four_sample_table)
        pd.testing.assert_frame_equal(before, four_sample_table.to_frame())

    def test_pipeline_error_attributed_to_step(self, four_sample_table):
        pipeline = TidyAbundancePipeline().add_step(
            "filter", keep_abundant, factor_of_interest="treatment"
        )
        with pytest.raises(UnknownColumn) as exc_info:
            pipeline.run(four_sample_table)
        assert exc_info.value.stage == "filter"
        assert str(exc_info.value).startswith("[filter]")

    def test_degenerate_sample_attributed(self, four_sample_counts, four_sample_metadata):
        counts = four_sample_counts.assign(C1=0)
        metadata = pd.concat(
            [
                four_sample_metadata,
                pd.DataFrame({"sample": ["C1"], "condition": ["drug"], "batch": ["b1"]}),
            ]
        )
        pipeline = TidyAbundancePipeline().add_step(
            "normalize", scale_abundance, factor_of_interest="condition"
        )
        with pytest.raises(DegenerateSample) as exc_info:
            pipeline.run(build(counts, metadata))
        assert exc_info.value.stage == "normalize"
        assert exc_info.value.sample == "C1"

    def test_library_error_wrapped(self, four_sample_table, caplog):
        pipeline = TidyAbundancePipeline().add_step(
            "pca", reduce_dimensions, n_components=50
        )
        with pytest.raises(StageFailed) as exc_info:
            pipeline.run(four_sample_table)
        assert exc_info.value.stage == "pca"
        assert exc_info.value.details["operation_stage"] == "reduce_dimensions"
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert "Pipeline step 'pca' failed" in caplog.text


class TestConfig:
    def test_default_config_loads(self):
        config = load_pipeline_config(DEFAULT_CONFIG_PATH)
        operations = [step["operation"] for step in config["steps"]]
        assert operations == [
            "keep_abundant",
            "scale_abundance",
            "reduce_dimensions",
            "test_differential_abundance",
        ]

    def test_default_pipeline_runs(self, pasilla_table):
        pipeline = TidyAbundancePipeline.from_config()
        result = pipeline.run(pasilla_table)
        assert "PC1" in result.sample_columns
        assert "deseq2_padj" in result.transcript_columns

    def test_methods_become_enums(self):
        pipeline = TidyAbundancePipeline.from_config(
            {
                "steps": [
                    {"name": "scale", "operation": "scale_abundance", "params": {"method": "RLE"}},
                    {"name": "mds", "operation": "reduce_dimensions", "params": {"method": "MDS"}},
                    {
                        "name": "de",
                        "operation": "test_differential_abundance",
                        "params": {
                            "grouping_column": "condition",
                            "method": "welch",
                            "contrast": ["drug", "ctrl"],
                        },
                    },
                ]
            }
        )
        scale, mds, de = pipeline.steps
        assert scale.kwargs["method"] is ScalingMethod.RLE
        assert mds.kwargs["method"] is ReductionMethod.MDS
        assert de.kwargs["method"] is DifferentialMethod.WELCH
        assert de.kwargs["contrast"] == ("drug", "ctrl")

    def test_unknown_operation(self, tmp_path):
        path = _write_config(tmp_path / "p.yaml", "steps:\n  - operation: normalize_everything\n")
        with pytest.raises(ValueError, match="unknown operation"):
            load_pipeline_config(path)

    def test_missing_steps(self, tmp_path):
        path = _write_config(tmp_path / "p.yaml", "name: empty\n")
        with pytest.raises(ValueError, match="steps"):
            load_pipeline_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pipeline_config(tmp_path / "absent.yaml")

    def test_nested_for_each_group(self, tmp_path, four_sample_table):
        path = _write_config(
            tmp_path / "p.yaml",
            """
steps:
  - name: per_condition
    operation: for_each_group
    params:
      grouping_columns: [condition]
      steps:
        - name: filter
          operation: keep_abundant
          params:
            min_count: 10
        - name: scale
          operation: scale_abundance
          params:
            method: TMM
""",
        )
        result = TidyAbundancePipeline.from_config(path).run(four_sample_table)
        assert SCALED_COLUMN in result.pair_columns
        assert set(result.to_frame()[SAMPLE]) == {"A1", "A2", "B1", "B2"}

    def test_nested_error_names_both_steps(self, four_sample_table):
        pipeline = TidyAbundancePipeline.from_config(
            {
                "steps": [
                    {
                        "name": "per_batch",
                        "operation": "for_each_group",
                        "params": {
                            "grouping_columns": "batch",
                            "steps": [
                                {
                                    "name": "filter",
                                    "operation": "keep_abundant",
                                    "params": {"factor_of_interest": "treatment"},
                                }
                            ],
                        },
                    }
                ]
            }
        )
        with pytest.raises(UnknownColumn) as exc_info:
            pipeline.run(four_sample_table)
        assert exc_info.value.stage == "per_batch/filter"

    def test_for_each_group_needs_steps(self, tmp_path):
        path = _write_config(
            tmp_path / "p.yaml",
            "steps:\n  - operation: for_each_group\n    params:\n      grouping_columns: [batch]\n",
        )
        with pytest.raises(ValueError, match="for_each_group"):
            load_pipeline_config(path)

    def test_deconvolution_signature_path(self, tmp_path, mixture_data):
        counts, metadata, signature, _ = mixture_data
        signature_path = tmp_path / "signature.csv"
        signature.to_csv(signature_path)
        pipeline = TidyAbundancePipeline.from_config(
            {
                "steps": [
                    {
                        "name": "cells",
                        "operation": "deconvolve_cellularity",
                        "params": {"signature_path": str(signature_path)},
                    }
                ]
            }
        )
        result = pipeline.run(build(counts, metadata))
        assert "nnls_T_cell" in result.sample_columns

    def test_deconvolution_without_signature(self):
        with pytest.raises(ValueError, match="signature_path"):
            TidyAbundancePipeline.from_config(
                {"steps": [{"name": "cells", "operation": "deconvolve_cellularity"}]}
            )
