"""Tests for the long-format AbundanceTable and build()."""

import pytest
import pandas as pd
import numpy as np

from abundance_table import (
    ABUNDANCE,
    SAMPLE,
    TRANSCRIPT,
    AbundanceTable,
    Axis,
    ColumnCollision,
    InvariantViolation,
    MissingMetadata,
    ShapeMismatch,
    UnknownColumn,
    build,
    from_long,
)


class TestBuild:
    def test_one_row_per_pair(self, four_sample_table):
        assert len(four_sample_table) == 4 * 6
        assert four_sample_table.n_samples == 4
        assert four_sample_table.n_transcripts == 6

    def test_column_tags(self, four_sample_table):
        assert four_sample_table.sample_columns == ("condition", "batch")
        assert four_sample_table.transcript_columns == ("symbol", "biotype")
        assert four_sample_table.pair_columns == (ABUNDANCE,)
        assert four_sample_table.axis_of("condition") == Axis.SAMPLE
        assert four_sample_table.axis_of("symbol") == Axis.TRANSCRIPT
        assert four_sample_table.axis_of(ABUNDANCE) == Axis.PAIR

    def test_abundance_values_preserved(self, four_sample_table, four_sample_counts):
        matrix = four_sample_table.to_matrix()
        pd.testing.assert_frame_equal(
            matrix.astype(int),
            four_sample_counts.astype(int),
            check_names=False,
        )

    def test_duplicate_transcripts_rejected(self, four_sample_counts, four_sample_metadata):
        counts = pd.concat([four_sample_counts, four_sample_counts.iloc[[0]]])
        with pytest.raises(ShapeMismatch) as exc_info:
            build(counts, four_sample_metadata)
        assert exc_info.value.entity == "t_down"
        assert exc_info.value.stage == "build"

    def test_negative_counts_rejected(self, four_sample_counts, four_sample_metadata):
        counts = four_sample_counts.copy()
        counts.loc["t_mid", "A1"] = -1
        with pytest.raises(ShapeMismatch, match="negative"):
            build(counts, four_sample_metadata)

    def test_non_numeric_counts_rejected(self, four_sample_counts, four_sample_metadata):
        counts = four_sample_counts.astype(object)
        counts["A1"] = ["x"] * len(counts)
        with pytest.raises(ShapeMismatch, match="not numeric"):
            build(counts, four_sample_metadata)

    def test_duplicate_metadata_rows_rejected(self, four_sample_counts, four_sample_metadata):
        metadata = pd.concat([four_sample_metadata, four_sample_metadata.iloc[[0]]])
        with pytest.raises(ShapeMismatch, match="duplicate"):
            build(four_sample_counts, metadata)

    def test_missing_metadata_strict(self, four_sample_counts, four_sample_metadata):
        metadata = four_sample_metadata[four_sample_metadata["sample"] != "B2"]
        with pytest.raises(MissingMetadata) as exc_info:
            build(four_sample_counts, metadata)
        assert exc_info.value.entity == "B2"

    def test_missing_metadata_permissive(self, four_sample_counts, four_sample_metadata, caplog):
        metadata = four_sample_metadata[four_sample_metadata["sample"] != "B2"]
        table = build(four_sample_counts, metadata, strict=False)
        samples = table.sample_wise().set_index(SAMPLE)
        assert pd.isna(samples.loc["B2", "condition"])
        assert samples.loc["A1", "condition"] == "ctrl"
        assert "no metadata" in caplog.text

    def test_unmatched_transcript_metadata_is_null(self, four_sample_counts, four_sample_metadata):
        annotation = pd.DataFrame({"symbol": ["DWN"]}, index=["t_down"])
        table = build(four_sample_counts, four_sample_metadata, annotation)
        symbols = table.transcript_wise().set_index(TRANSCRIPT)["symbol"]
        assert symbols["t_down"] == "DWN"
        assert symbols.drop("t_down").isna().all()

    def test_empty_transcript_metadata_keeps_columns(self, four_sample_counts, four_sample_metadata):
        annotation = pd.DataFrame(columns=["transcript", "symbol", "biotype"])
        table = build(four_sample_counts, four_sample_metadata, annotation)
        assert table.transcript_columns == ("symbol", "biotype")
        transcripts = table.transcript_wise()
        assert len(transcripts) == 6
        assert transcripts[["symbol", "biotype"]].isna().all().all()

    def test_reserved_metadata_column(self, four_sample_counts, four_sample_metadata):
        metadata = four_sample_metadata.assign(abundance=1)
        with pytest.raises(ShapeMismatch, match="reserved"):
            build(four_sample_counts, metadata)

    def test_column_in_both_metadata_tables(
        self, four_sample_counts, four_sample_metadata, transcript_annotation
    ):
        annotation = transcript_annotation.assign(batch="x")
        with pytest.raises(ShapeMismatch, match="both"):
            build(four_sample_counts, four_sample_metadata, annotation)


class TestProjections:
    def test_sample_wise_one_row_per_sample(self, four_sample_table):
        samples = four_sample_table.sample_wise()
        assert list(samples.columns) == [SAMPLE, "condition", "batch"]
        assert samples[SAMPLE].tolist() == ["A1", "A2", "B1", "B2"]

    def test_transcript_wise_one_row_per_transcript(self, four_sample_table):
        transcripts = four_sample_table.transcript_wise()
        assert list(transcripts.columns) == [TRANSCRIPT, "symbol", "biotype"]
        assert len(transcripts) == 6

    def test_round_trip(self, four_sample_table):
        """Re-joining both projections onto the keys gives the original metadata."""
        frame = four_sample_table.to_frame()
        expected = frame[list(four_sample_table.reconstruct().columns)]
        pd.testing.assert_frame_equal(four_sample_table.reconstruct(), expected)

    def test_round_trip_with_nulls(self, four_sample_counts, four_sample_metadata):
        metadata = four_sample_metadata.copy()
        metadata.loc[0, "batch"] = None
        table = build(four_sample_counts, metadata)
        frame = table.to_frame()
        pd.testing.assert_frame_equal(
            table.reconstruct(), frame[list(table.reconstruct().columns)]
        )

    def test_to_frame_is_a_copy(self, four_sample_table):
        frame = four_sample_table.to_frame()
        frame[ABUNDANCE] = -1
        assert (four_sample_table.to_frame()[ABUNDANCE] >= 0).all()

    def test_to_matrix_unknown_column(self, four_sample_table):
        with pytest.raises(UnknownColumn):
            four_sample_table.to_matrix("condition")


class TestValidate:
    def _long(self):
        return pd.DataFrame(
            {
                SAMPLE: ["s1", "s1", "s2", "s2"],
                TRANSCRIPT: ["t1", "t2", "t1", "t2"],
                ABUNDANCE: [1, 2, 3, 4],
                "group": ["a", "a", "b", "b"],
                "length": [100, 200, 100, 200],
            }
        )

    def test_valid_long_table(self):
        table = from_long(self._long(), ["group"], ["length"])
        assert table.n_samples == 2

    def test_duplicate_pair(self):
        frame = pd.concat([self._long(), self._long().iloc[[0]]])
        with pytest.raises(InvariantViolation) as exc_info:
            from_long(frame, ["group"], ["length"])
        assert exc_info.value.entity == "s1/t1"

    def test_sample_column_varies_within_sample(self):
        frame = self._long()
        frame.loc[1, "group"] = "b"
        with pytest.raises(InvariantViolation) as exc_info:
            from_long(frame, ["group"], ["length"])
        assert exc_info.value.column == "group"
        assert exc_info.value.entity == "s1"

    def test_transcript_column_varies_within_transcript(self):
        frame = self._long()
        frame.loc[2, "length"] = 999
        with pytest.raises(InvariantViolation) as exc_info:
            from_long(frame, ["group"], ["length"])
        assert exc_info.value.column == "length"
        assert exc_info.value.entity == "t1"

    def test_untagged_column(self):
        with pytest.raises(InvariantViolation, match="no axis tag"):
            from_long(self._long(), ["group"], [])

    def test_tagged_column_missing(self):
        with pytest.raises(UnknownColumn):
            AbundanceTable(self._long(), ("group", "nope"), ("length",))

    def test_missing_key_column(self):
        with pytest.raises(ShapeMismatch):
            from_long(self._long().drop(columns=[TRANSCRIPT]), ["group"], ["length"])

    def test_null_key(self):
        frame = self._long()
        frame.loc[0, SAMPLE] = np.nan
        with pytest.raises(InvariantViolation, match="null"):
            from_long(frame, ["group"], ["length"])


class TestSuccessors:
    def test_with_columns_adds_tagged_column(self, four_sample_table):
        frame = four_sample_table.to_frame()
        table = four_sample_table.with_columns(
            Axis.PAIR, {"log_abundance": np.log1p(frame[ABUNDANCE])}
        )
        assert "log_abundance" in table.pair_columns
        assert "log_abundance" not in four_sample_table.columns

    def test_with_columns_collision(self, four_sample_table):
        frame = four_sample_table.to_frame()
        with pytest.raises(ColumnCollision):
            four_sample_table.with_columns(Axis.SAMPLE, {"condition": frame["condition"]})

    def test_filter_rows(self, four_sample_table):
        frame = four_sample_table.to_frame()
        table = four_sample_table.filter_rows(frame[SAMPLE] != "A1")
        assert table.n_samples == 3
        assert four_sample_table.n_samples == 4

    def test_with_frame_drops_tags_of_removed_columns(self, four_sample_table):
        frame = four_sample_table.to_frame().drop(columns=["batch"])
        table = four_sample_table.with_frame(frame)
        assert table.sample_columns == ("condition",)

    def test_error_string_has_stage(self):
        err = ShapeMismatch("bad", stage="build")
        assert str(err) == "[build] bad"
        assert str(ShapeMismatch("bad")) == "bad"
