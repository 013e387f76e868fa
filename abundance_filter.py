"""
Abundance filtering stage.

Decides per transcript whether it is abundant enough to keep:

- identify_abundant(): flags transcripts with a transcript-level boolean
  column (no data loss, for inspection)
- keep_abundant(): drops the rows of non-abundant transcripts
- keep_variable(): keeps the most variable transcripts

The decision for a transcript depends only on its own raw abundance values,
so applying the filter twice gives the same rows as applying it once.
"""

from typing import Optional, Tuple
import logging
import math
import pandas as pd
import numpy as np

from abundance_table import (
    ABUNDANCE,
    TRANSCRIPT,
    AbundanceTable,
    Axis,
    UnknownColumn,
)

logger = logging.getLogger(__name__)

ABUNDANT_COLUMN = ".abundant"


def _group_sizes(table: AbundanceTable, factor_of_interest: Optional[str]) -> pd.Series:
    """Number of samples per level of factor_of_interest (one group if None)."""
    samples = table.sample_wise()
    if factor_of_interest is None:
        return pd.Series({"all": len(samples)})

    if factor_of_interest not in table.sample_columns:
        if factor_of_interest in table.columns:
            raise UnknownColumn(
                f"Factor '{factor_of_interest}' is not a sample-level column "
                f"(it is {table.axis_of(factor_of_interest).value}-level).",
                stage="identify_abundant",
                entity=factor_of_interest,
            )
        raise UnknownColumn(
            f"Factor '{factor_of_interest}' not found. Sample-level columns: "
            f"{', '.join(table.sample_columns) or '(none)'}.",
            stage="identify_abundant",
            entity=factor_of_interest,
        )
    return samples[factor_of_interest].value_counts(dropna=False)


def required_samples(
    table: AbundanceTable,
    factor_of_interest: Optional[str] = None,
    min_group_fraction: float = 0.0,
) -> int:
    """
    Number of samples in which a transcript must reach min_count.

    The smallest group size g, raised to ceil(min_group_fraction × n_samples)
    when that is larger.
    """
    if not 0.0 <= min_group_fraction <= 1.0:
        raise ValueError(
            f"min_group_fraction must be between 0 and 1, got {min_group_fraction}"
        )
    sizes = _group_sizes(table, factor_of_interest)
    smallest = int(sizes.min()) if len(sizes) else 0
    by_fraction = int(math.ceil(min_group_fraction * table.n_samples))
    return max(smallest, by_fraction)


def _abundant_transcripts(
    table: AbundanceTable,
    factor_of_interest: Optional[str],
    min_count: float,
    min_group_fraction: float,
    min_total_count: float,
) -> Tuple[pd.Series, int]:
    """Boolean Series indexed by transcript, plus the sample requirement used."""
    n_required = required_samples(table, factor_of_interest, min_group_fraction)
    frame = table.to_frame()
    passing = (frame[ABUNDANCE] >= min_count).groupby(frame[TRANSCRIPT], sort=False).sum()
    totals = frame[ABUNDANCE].groupby(frame[TRANSCRIPT], sort=False).sum()
    abundant = (passing >= n_required) & (totals >= min_total_count)
    return abundant, n_required


def identify_abundant(
    table: AbundanceTable,
    factor_of_interest: Optional[str] = None,
    min_count: float = 10,
    min_group_fraction: float = 0.0,
    min_total_count: float = 0,
) -> AbundanceTable:
    """
    Flag abundant transcripts with a transcript-level '.abundant' column.

    Args:
        table: Input AbundanceTable
        factor_of_interest: Sample-level column defining groups (None for
            a single group)
        min_count: Minimum raw abundance per sample
        min_group_fraction: Fraction of all samples that must pass
            (applied when larger than the smallest group)
        min_total_count: Minimum summed abundance across samples

    Returns:
        New AbundanceTable; an existing '.abundant' column is replaced
    """
    abundant, n_required = _abundant_transcripts(
        table, factor_of_interest, min_count, min_group_fraction, min_total_count
    )
    frame = table.to_frame()
    base = table
    if ABUNDANT_COLUMN in frame.columns:
        base = table.with_frame(frame.drop(columns=[ABUNDANT_COLUMN]))
        frame = base.to_frame()

    flags = frame[TRANSCRIPT].map(abundant).astype(bool)
    logger.info(
        f"identify_abundant: {int(abundant.sum())}/{len(abundant)} transcripts abundant "
        f"(>= {min_count} in >= {n_required} samples)"
    )
    return base.with_columns(Axis.TRANSCRIPT, {ABUNDANT_COLUMN: flags}).validate()


def keep_abundant(
    table: AbundanceTable,
    factor_of_interest: Optional[str] = None,
    min_count: float = 10,
    min_group_fraction: float = 0.0,
    min_total_count: float = 0,
) -> AbundanceTable:
    """
    Drop rows of transcripts that are not abundant.

    Same parameters as identify_abundant(); no flag column is added.
    """
    abundant, n_required = _abundant_transcripts(
        table, factor_of_interest, min_count, min_group_fraction, min_total_count
    )
    frame = table.to_frame()
    mask = frame[TRANSCRIPT].map(abundant).astype(bool)
    result = table.filter_rows(mask).validate()
    logger.info(
        f"keep_abundant: kept {result.n_transcripts}/{table.n_transcripts} transcripts "
        f"(>= {min_count} in >= {n_required} samples)"
    )
    return result


def keep_variable(
    table: AbundanceTable,
    top: int = 500,
    abundance_column: Optional[str] = None,
) -> AbundanceTable:
    """
    Keep the top most variable transcripts.

    Variance is computed on log1p(abundance) across samples. Ties are broken
    by transcript identifier so the selection is deterministic.
    """
    column = abundance_column or ABUNDANCE
    matrix = np.log1p(table.to_matrix(column))
    variances = matrix.var(axis=1).rename("variance").reset_index()
    variances = variances.sort_values(
        ["variance", TRANSCRIPT], ascending=[False, True], kind="mergesort"
    )
    keep = set(variances[TRANSCRIPT].head(top))
    frame = table.to_frame()
    return table.filter_rows(frame[TRANSCRIPT].isin(keep)).validate()


def abundant_subset(table: AbundanceTable) -> AbundanceTable:
    """Rows flagged abundant; the table itself if it carries no flag column."""
    if ABUNDANT_COLUMN not in table.transcript_columns:
        return table
    frame = table.to_frame()
    return table.filter_rows(frame[ABUNDANT_COLUMN].astype(bool))
