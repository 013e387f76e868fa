"""
Sub-group dispatch: analyze each subset of a table independently.

nest() splits a table by the distinct values of metadata columns,
unnest() puts independently processed parts back together, and
for_each_group() does both around a stage function.
"""

from typing import Callable, Dict, List, Sequence, Tuple, Union
import logging
import pandas as pd

from abundance_table import (
    SAMPLE,
    TRANSCRIPT,
    AbundanceTable,
    Axis,
    InvariantViolation,
    PipelineError,
)
from stages import ColumnRef

logger = logging.getLogger(__name__)

StageFn = Callable[[AbundanceTable], AbundanceTable]


def _grouping_refs(
    table: AbundanceTable, grouping_columns: Union[str, Sequence[str]]
) -> List[str]:
    if isinstance(grouping_columns, str):
        grouping_columns = [grouping_columns]
    if not grouping_columns:
        raise ValueError("At least one grouping column is required.")
    for name in grouping_columns:
        ColumnRef(name).resolve(table)
    return list(grouping_columns)


def nest(
    table: AbundanceTable, grouping_columns: Union[str, Sequence[str]]
) -> Dict[Tuple, AbundanceTable]:
    """
    Split a table into disjoint sub-tables by metadata values.

    Args:
        table: Input AbundanceTable
        grouping_columns: Sample- or transcript-level column(s)

    Returns:
        Dict mapping a tuple of grouping values → sub-table, in order of first
        appearance. Null grouping values form their own partition.
    """
    columns = _grouping_refs(table, grouping_columns)
    frame = table.to_frame()
    parts = {}
    for key, group in frame.groupby(columns, sort=False, dropna=False):
        if not isinstance(key, tuple):
            key = (key,)
        parts[key] = table.with_frame(group.copy())
    logger.debug(f"Nested {len(frame)} rows into {len(parts)} groups by {columns}")
    return parts


def _split_varying(
    frame: pd.DataFrame, key: str, columns: List[str]
) -> Tuple[List[str], List[str]]:
    """(columns with one value per key, columns that differ across groups)."""
    if not columns or frame.empty:
        return columns, []
    counts = frame.groupby(key, sort=False)[columns].nunique(dropna=False)
    varying = [c for c in columns if (counts[c] > 1).any()]
    return [c for c in columns if c not in varying], varying


def unnest(parts: Sequence[AbundanceTable]) -> AbundanceTable:
    """
    Concatenate independently processed sub-tables.

    Column tags are unioned; columns missing from a part are null there.
    Groups are analysed independently, so a sample- or transcript-level
    column may take different values in different groups (per-group test
    statistics, per-group '.abundant' flags). Such a column now depends on
    (group, key) and is retagged as pairwise.

    Raises:
        InvariantViolation: duplicate (sample, transcript) pairs across parts,
            or a column tagged on different axes in different parts
    """
    parts = list(parts)
    if not parts:
        raise ValueError("Nothing to unnest.")

    tags = {Axis.SAMPLE: [], Axis.TRANSCRIPT: [], Axis.PAIR: []}
    seen = {}
    for part in parts:
        for axis in tags:
            for col in part.columns_on(axis):
                if col in seen and seen[col] != axis:
                    raise InvariantViolation(
                        f"Column '{col}' is {seen[col].value}-level in one group and "
                        f"{axis.value}-level in another.",
                        column=col,
                    )
                if col not in seen:
                    seen[col] = axis
                    tags[axis].append(col)

    frame = pd.concat([p.to_frame() for p in parts], ignore_index=True, sort=False)
    sample_cols, sample_varying = _split_varying(frame, SAMPLE, tags[Axis.SAMPLE])
    transcript_cols, transcript_varying = _split_varying(
        frame, TRANSCRIPT, tags[Axis.TRANSCRIPT]
    )
    retagged = sample_varying + transcript_varying
    if retagged:
        logger.info(f"Columns differ across groups, retagged as pairwise: {retagged}")

    template = parts[0]
    return template.with_frame(
        frame,
        sample_columns=sample_cols,
        transcript_columns=transcript_cols,
        pair_columns=tags[Axis.PAIR] + retagged,
    ).validate()


def for_each_group(
    table: AbundanceTable,
    grouping_columns: Union[str, Sequence[str]],
    stage_fn: StageFn,
) -> AbundanceTable:
    """
    Apply stage_fn to every group independently and combine the results.

    Each group's result is validated on its own; groups may keep different
    transcript sets. Columns whose values differ between groups come back
    pairwise (see unnest()).
    """
    results = []
    for key, part in nest(table, grouping_columns).items():
        try:
            results.append(stage_fn(part).validate())
        except PipelineError as e:
            e.message = f"{e.message} (group {key})"
            raise
        logger.info(f"Group {key}: {len(results[-1])} rows")
    return unnest(results)
