"""
Tidy long-format abundance table.

One row per (sample, transcript) pair. Every non-key column is tagged with the
axis it belongs to (sample-level, transcript-level, or pairwise), so the two
canonical projections can always be derived without loss:

- sample-wise: one row per sample (key + sample-level columns)
- transcript-wise: one row per transcript (key + transcript-level columns)

Tables are immutable values: every operation returns a new AbundanceTable.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import pandas as pd

logger = logging.getLogger(__name__)

SAMPLE = "sample"
TRANSCRIPT = "transcript"
ABUNDANCE = "abundance"
KEY_COLUMNS = [SAMPLE, TRANSCRIPT]


class Axis(Enum):
    """Axis a column is functionally dependent on."""

    SAMPLE = "sample"
    TRANSCRIPT = "transcript"
    PAIR = "pair"


# ============================================================================
# Errors
# ============================================================================


class PipelineError(Exception):
    """Base class for all abundance pipeline failures."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        entity: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        self.message = message
        self.stage = stage
        self.entity = entity
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        return f"{prefix}{self.message}"


class ShapeMismatch(PipelineError):
    """Count matrix and metadata keys do not line up."""


class MissingMetadata(PipelineError):
    """A sample lacks its metadata row under strict mode."""


class DegenerateSample(PipelineError):
    """A sample would get a zero, infinite or undefined scale factor."""

    def __init__(self, message: str, sample: str, stage: Optional[str] = None):
        super().__init__(message, stage=stage, entity=sample)
        self.sample = sample


class InvariantViolation(PipelineError):
    """A table breaks key uniqueness or metadata functional dependency."""

    def __init__(
        self,
        message: str,
        column: Optional[str] = None,
        entity: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message, stage=stage, entity=entity)
        self.column = column


class UnknownColumn(PipelineError):
    """A referenced column does not exist on the expected axis."""


class ColumnCollision(PipelineError):
    """Joining stage output would overwrite an existing column."""


class StageFailed(PipelineError):
    """An external routine inside a stage raised a non-pipeline error."""


# ============================================================================
# AbundanceTable
# ============================================================================


@dataclass(frozen=True, eq=False)
class AbundanceTable:
    """
    Immutable long-format table of transcript abundance.

    The DataFrame is kept private; use to_frame() to get a copy.
    """

    _frame: pd.DataFrame = field(repr=False)
    sample_columns: Tuple[str, ...] = ()
    transcript_columns: Tuple[str, ...] = ()
    pair_columns: Tuple[str, ...] = (ABUNDANCE,)

    def __post_init__(self):
        for col in self.all_tagged_columns:
            if col not in self._frame.columns:
                raise UnknownColumn(
                    f"Column '{col}' is tagged but missing from the table."
                )
        untagged = [
            c for c in self._frame.columns
            if c not in KEY_COLUMNS and c not in self.all_tagged_columns
        ]
        if untagged:
            raise InvariantViolation(
                f"Columns {untagged} have no axis tag. Register them as "
                f"sample-level, transcript-level or pairwise.",
                column=untagged[0],
            )

    # ------------------------------------------------------------------
    # Basic accessors
    # ------------------------------------------------------------------

    @property
    def all_tagged_columns(self) -> Tuple[str, ...]:
        return self.sample_columns + self.transcript_columns + self.pair_columns

    @property
    def columns(self) -> List[str]:
        return list(self._frame.columns)

    @property
    def samples(self) -> List[str]:
        return list(pd.unique(self._frame[SAMPLE]))

    @property
    def transcripts(self) -> List[str]:
        return list(pd.unique(self._frame[TRANSCRIPT]))

    @property
    def n_samples(self) -> int:
        return int(self._frame[SAMPLE].nunique())

    @property
    def n_transcripts(self) -> int:
        return int(self._frame[TRANSCRIPT].nunique())

    def __len__(self) -> int:
        return len(self._frame)

    def to_frame(self) -> pd.DataFrame:
        """Return a copy of the long-format data."""
        return self._frame.copy()

    def axis_of(self, column: str) -> Axis:
        if column in self.sample_columns:
            return Axis.SAMPLE
        if column in self.transcript_columns:
            return Axis.TRANSCRIPT
        if column in self.pair_columns:
            return Axis.PAIR
        raise UnknownColumn(
            f"Column '{column}' not found. Available columns: "
            f"{', '.join(self.all_tagged_columns)}.",
            entity=column,
        )

    def columns_on(self, axis: Axis) -> Tuple[str, ...]:
        return {
            Axis.SAMPLE: self.sample_columns,
            Axis.TRANSCRIPT: self.transcript_columns,
            Axis.PAIR: self.pair_columns,
        }[axis]

    # ------------------------------------------------------------------
    # Successors
    # ------------------------------------------------------------------

    def with_frame(
        self,
        frame: pd.DataFrame,
        sample_columns: Optional[Iterable[str]] = None,
        transcript_columns: Optional[Iterable[str]] = None,
        pair_columns: Optional[Iterable[str]] = None,
    ) -> "AbundanceTable":
        """Build a successor table, keeping tags that still have a column."""
        def keep(cols):
            return tuple(c for c in cols if c in frame.columns)

        return AbundanceTable(
            frame.reset_index(drop=True),
            sample_columns=keep(
                self.sample_columns if sample_columns is None else sample_columns
            ),
            transcript_columns=keep(
                self.transcript_columns
                if transcript_columns is None
                else transcript_columns
            ),
            pair_columns=keep(
                self.pair_columns if pair_columns is None else pair_columns
            ),
        )

    def with_columns(self, axis: Axis, values: Dict[str, pd.Series]) -> "AbundanceTable":
        """
        Add columns aligned to the long frame's rows.

        Args:
            axis: Axis the new columns depend on
            values: Column name → Series indexed like the long frame
                (a positional RangeIndex)

        Returns:
            New AbundanceTable
        """
        for name in values:
            if name in self._frame.columns:
                raise ColumnCollision(
                    f"Column '{name}' already exists. Choose a different name "
                    f"or prefix.",
                    entity=name,
                )
        frame = self._frame.copy()
        for name, series in values.items():
            frame[name] = series.values if isinstance(series, pd.Series) else series
        sample_cols = list(self.sample_columns)
        transcript_cols = list(self.transcript_columns)
        pair_cols = list(self.pair_columns)
        target = {
            Axis.SAMPLE: sample_cols,
            Axis.TRANSCRIPT: transcript_cols,
            Axis.PAIR: pair_cols,
        }[axis]
        target.extend(values.keys())
        return self.with_frame(frame, sample_cols, transcript_cols, pair_cols)

    def filter_rows(self, mask: pd.Series) -> "AbundanceTable":
        """Keep rows where mask is True."""
        return self.with_frame(self._frame.loc[mask.values].copy())

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def sample_wise(self) -> pd.DataFrame:
        """One row per sample with its sample-level columns."""
        cols = [SAMPLE] + list(self.sample_columns)
        return (
            self._frame.loc[:, cols]
            .drop_duplicates(subset=SAMPLE)
            .reset_index(drop=True)
        )

    def transcript_wise(self) -> pd.DataFrame:
        """One row per transcript with its transcript-level columns."""
        cols = [TRANSCRIPT] + list(self.transcript_columns)
        return (
            self._frame.loc[:, cols]
            .drop_duplicates(subset=TRANSCRIPT)
            .reset_index(drop=True)
        )

    def reconstruct(self) -> pd.DataFrame:
        """
        Re-join both projections onto the key pairs.

        The result equals the long table restricted to key and metadata
        columns, in the same row order.
        """
        keys = self._frame.loc[:, KEY_COLUMNS]
        merged = keys.merge(self.sample_wise(), on=SAMPLE, how="left")
        merged = merged.merge(self.transcript_wise(), on=TRANSCRIPT, how="left")
        cols = KEY_COLUMNS + list(self.sample_columns) + list(self.transcript_columns)
        return merged.loc[:, cols]

    def to_matrix(self, abundance_column: str = ABUNDANCE) -> pd.DataFrame:
        """
        Pivot a pairwise column to a transcripts × samples matrix.

        Missing (sample, transcript) pairs become 0.
        """
        if abundance_column not in self.pair_columns:
            raise UnknownColumn(
                f"'{abundance_column}' is not a pairwise abundance column. "
                f"Available: {', '.join(self.pair_columns)}.",
                entity=abundance_column,
            )
        matrix = self._frame.pivot(
            index=TRANSCRIPT, columns=SAMPLE, values=abundance_column
        )
        matrix = matrix.reindex(index=self.transcripts, columns=self.samples)
        matrix.index.name = TRANSCRIPT
        matrix.columns.name = SAMPLE
        return matrix.fillna(0)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> "AbundanceTable":
        """
        Check key uniqueness and metadata functional dependency.

        Returns:
            self, so calls can be chained

        Raises:
            InvariantViolation: naming the offending column and entity
        """
        frame = self._frame
        for key in KEY_COLUMNS:
            if frame[key].isna().any():
                raise InvariantViolation(
                    f"Key column '{key}' contains null identifiers.",
                    column=key,
                )

        dup_mask = frame.duplicated(subset=KEY_COLUMNS)
        if dup_mask.any():
            first = frame.loc[dup_mask, KEY_COLUMNS].iloc[0]
            raise InvariantViolation(
                f"Duplicate (sample, transcript) pair: "
                f"({first[SAMPLE]}, {first[TRANSCRIPT]}). "
                f"{int(dup_mask.sum())} duplicate rows in total.",
                column=TRANSCRIPT,
                entity=f"{first[SAMPLE]}/{first[TRANSCRIPT]}",
            )

        _check_dependency(frame, SAMPLE, self.sample_columns)
        _check_dependency(frame, TRANSCRIPT, self.transcript_columns)
        return self


def _check_dependency(frame: pd.DataFrame, key: str, columns: Tuple[str, ...]) -> None:
    """Every column must hold one value per key (nulls count as a value)."""
    if not columns or frame.empty:
        return
    counts = frame.groupby(key, sort=False)[list(columns)].nunique(dropna=False)
    bad = counts > 1
    if bad.any().any():
        column = bad.any()[bad.any()].index[0]
        entity = bad.index[bad[column]][0]
        raise InvariantViolation(
            f"Column '{column}' is tagged {key}-level but varies within "
            f"{key} '{entity}'.",
            column=column,
            entity=str(entity),
        )


# ============================================================================
# Construction
# ============================================================================


def _keyed(metadata: pd.DataFrame, key: str, label: str) -> pd.DataFrame:
    """Return metadata indexed by key, accepting either index or column."""
    if key in metadata.columns:
        metadata = metadata.set_index(key)
    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    metadata.index.name = key
    if metadata.index.duplicated().any():
        dups = metadata.index[metadata.index.duplicated()].unique().tolist()
        raise ShapeMismatch(
            f"{label} has duplicate {key} keys: {', '.join(dups[:5])}"
            f"{'...' if len(dups) > 5 else ''}.",
            stage="build",
            entity=dups[0],
        )
    reserved = [c for c in metadata.columns if c in KEY_COLUMNS + [ABUNDANCE]]
    if reserved:
        raise ShapeMismatch(
            f"{label} uses reserved column names: {', '.join(reserved)}.",
            stage="build",
        )
    return metadata


def build(
    count_matrix: pd.DataFrame,
    sample_metadata: pd.DataFrame,
    transcript_metadata: Optional[pd.DataFrame] = None,
    strict: bool = True,
) -> AbundanceTable:
    """
    Build a long-format AbundanceTable from a count matrix and metadata.

    Args:
        count_matrix: transcripts × samples DataFrame of non-negative counts
        sample_metadata: table keyed by sample (index or 'sample' column)
        transcript_metadata: optional table keyed by transcript (index or
            'transcript' column); unmatched transcripts get null metadata
        strict: raise MissingMetadata when a sample has no metadata row;
            when False, such samples get null metadata

    Returns:
        Validated AbundanceTable

    Raises:
        ShapeMismatch: duplicate identifiers, negative or non-numeric counts
        MissingMetadata: a sample lacks metadata under strict mode
    """
    matrix = count_matrix.copy()
    matrix.index = matrix.index.astype(str)
    matrix.columns = matrix.columns.astype(str)

    if matrix.index.duplicated().any():
        dups = matrix.index[matrix.index.duplicated()].unique().tolist()
        raise ShapeMismatch(
            f"Count matrix has {len(dups)} duplicate transcript identifiers: "
            f"{', '.join(dups[:5])}{'...' if len(dups) > 5 else ''}. "
            f"Suggestion: aggregate duplicated transcripts before building.",
            stage="build",
            entity=dups[0],
        )
    if matrix.columns.duplicated().any():
        dups = matrix.columns[matrix.columns.duplicated()].unique().tolist()
        raise ShapeMismatch(
            f"Count matrix has duplicate sample identifiers: {', '.join(dups[:5])}.",
            stage="build",
            entity=dups[0],
        )

    non_numeric = [c for c in matrix.columns if not pd.api.types.is_numeric_dtype(matrix[c])]
    if non_numeric:
        raise ShapeMismatch(
            f"Count matrix columns are not numeric: {', '.join(non_numeric[:5])}.",
            stage="build",
            entity=non_numeric[0],
        )
    if (matrix < 0).any().any():
        negative_count = int((matrix < 0).sum().sum())
        raise ShapeMismatch(
            f"Count matrices cannot contain negative values. Found {negative_count} "
            f"negative values.",
            stage="build",
            details={"negative_count": negative_count},
        )

    samples_meta = _keyed(sample_metadata, SAMPLE, "Sample metadata")
    missing = [s for s in matrix.columns if s not in samples_meta.index]
    if missing:
        if strict:
            raise MissingMetadata(
                f"{len(missing)} samples have no metadata row: "
                f"{', '.join(missing[:5])}{'...' if len(missing) > 5 else ''}. "
                f"Suggestion: add them to the sample metadata or build with strict=False.",
                stage="build",
                entity=missing[0],
            )
        logger.warning(
            f"{len(missing)} samples have no metadata; their metadata will be null: "
            f"{', '.join(missing[:5])}"
        )
    extra = [s for s in samples_meta.index if s not in matrix.columns]
    if extra:
        logger.debug(f"Dropping metadata for {len(extra)} samples absent from counts")
    samples_meta = samples_meta.reindex(matrix.columns)
    samples_meta.index.name = SAMPLE

    if transcript_metadata is not None:
        transcripts_meta = _keyed(transcript_metadata, TRANSCRIPT, "Transcript metadata")
        shared = set(transcripts_meta.columns) & set(samples_meta.columns)
        if shared:
            raise ShapeMismatch(
                f"Columns appear in both sample and transcript metadata: "
                f"{', '.join(sorted(shared))}.",
                stage="build",
            )
        transcripts_meta = transcripts_meta.reindex(matrix.index)
    else:
        transcripts_meta = pd.DataFrame(index=matrix.index)
    transcripts_meta.index.name = TRANSCRIPT

    matrix.index.name = TRANSCRIPT
    matrix.columns.name = SAMPLE
    long_df = matrix.reset_index().melt(
        id_vars=TRANSCRIPT, var_name=SAMPLE, value_name=ABUNDANCE
    )
    long_df = long_df.loc[:, [SAMPLE, TRANSCRIPT, ABUNDANCE]]

    long_df = long_df.merge(
        samples_meta.reset_index(), on=SAMPLE, how="left"
    ).merge(transcripts_meta.reset_index(), on=TRANSCRIPT, how="left")

    table = AbundanceTable(
        long_df,
        sample_columns=tuple(samples_meta.columns),
        transcript_columns=tuple(transcripts_meta.columns),
        pair_columns=(ABUNDANCE,),
    ).validate()

    logger.info(
        f"Built abundance table: {table.n_samples} samples × "
        f"{table.n_transcripts} transcripts ({len(table)} rows)"
    )
    return table


def from_long(
    frame: pd.DataFrame,
    sample_columns: Iterable[str] = (),
    transcript_columns: Iterable[str] = (),
    pair_columns: Iterable[str] = (ABUNDANCE,),
) -> AbundanceTable:
    """Wrap an existing long-format DataFrame (already tidy) and validate it."""
    missing = [c for c in KEY_COLUMNS if c not in frame.columns]
    if missing:
        raise ShapeMismatch(
            f"Long-format data is missing key columns: {', '.join(missing)}."
        )
    return AbundanceTable(
        frame.reset_index(drop=True).copy(),
        sample_columns=tuple(sample_columns),
        transcript_columns=tuple(transcript_columns),
        pair_columns=tuple(pair_columns),
    ).validate()
