"""
Scaling (normalization) stage.

One scale factor per sample is estimated from the abundant transcripts only,
then applied to ALL transcripts. The raw 'abundance' column is kept next to
the new 'abundance_scaled' column.

Estimators:
- TMM: trimmed mean of M-values against a reference sample (edgeR method)
- UPPERQUARTILE: 75th percentile of non-zero counts over library size
- RLE: DESeq2 median-of-ratios size factors (PyDESeq2)
- NONE: library size only
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
import logging
import pandas as pd
import numpy as np
from scipy.stats import rankdata
from pydeseq2.preprocessing import deseq2_norm

from abundance_table import (
    ABUNDANCE,
    SAMPLE,
    AbundanceTable,
    Axis,
    DegenerateSample,
    UnknownColumn,
)
from abundance_filter import ABUNDANT_COLUMN, abundant_subset, identify_abundant

logger = logging.getLogger(__name__)

SCALED_COLUMN = "abundance_scaled"
FACTOR_COLUMN = "scale_factor"
MULTIPLIER_COLUMN = "multiplier"


class ScalingMethod(Enum):
    """Supported scale factor estimators."""

    TMM = "TMM"
    UPPERQUARTILE = "upperquartile"
    RLE = "RLE"
    NONE = "none"


@dataclass
class ScaleFactors:
    """Per-sample scaling result (all Series indexed by sample)."""

    library_size: pd.Series  # abundant-subset column sums
    factor: pd.Series  # method factor, geometric mean 1
    multiplier: pd.Series  # applied to raw abundance
    reference_sample: str
    method: ScalingMethod


# ============================================================================
# Estimators
# ============================================================================


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
) -> float:
    """TMM factor of one sample against the reference (edgeR calcNormFactors)."""
    n_o = obs.sum()
    n_r = ref.sum()
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / n_o) / (ref / n_r))
        abs_e = (np.log2(obs / n_o) + np.log2(ref / n_r)) / 2
        v = (n_o - obs) / n_o / obs + (n_r - ref) / n_r / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_l = rankdata(log_r)
    rank_s = rankdata(abs_e)
    keep = (rank_l >= lo_l) & (rank_l <= hi_l) & (rank_s >= lo_s) & (rank_s <= hi_s)

    if do_weighting:
        f = np.nansum(log_r[keep] / v[keep]) / np.nansum(1 / v[keep])
    else:
        f = np.nanmean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def _geometric_center(factors: pd.Series) -> pd.Series:
    """Rescale factors so their geometric mean is 1."""
    return factors / np.exp(np.mean(np.log(factors)))


def estimate_factors(
    counts: pd.DataFrame,
    method: ScalingMethod,
    reference_sample: str,
) -> pd.Series:
    """
    Method factor per sample from a transcripts × samples count matrix.

    Library sizes must already be checked positive. Returned factors are not
    yet checked for degeneracy.
    """
    lib_size = counts.sum(axis=0)

    if method == ScalingMethod.NONE:
        return pd.Series(1.0, index=counts.columns)

    if method == ScalingMethod.TMM:
        ref = counts[reference_sample].to_numpy(dtype=float)
        factors = pd.Series(
            {
                s: _tmm_factor(counts[s].to_numpy(dtype=float), ref)
                for s in counts.columns
            }
        )
        return _geometric_center(factors)

    if method == ScalingMethod.UPPERQUARTILE:
        expressed = counts.loc[(counts > 0).any(axis=1)]
        upper = expressed.quantile(0.75, axis=0)
        factors = upper / lib_size
        return _geometric_center(factors) if (factors > 0).all() else factors

    if method == ScalingMethod.RLE:
        # PyDESeq2 expects samples × genes
        _, size_factors = deseq2_norm(counts.T.to_numpy(dtype=float))
        factors = pd.Series(np.asarray(size_factors, dtype=float), index=counts.columns)
        factors = factors / lib_size
        return _geometric_center(factors) if (factors > 0).all() else factors

    raise ValueError(f"Unknown scaling method: {method}")


def choose_reference(library_size: pd.Series) -> str:
    """Sample whose library size is closest to the median (ties: lowest id)."""
    distance = (library_size - library_size.median()).abs()
    ordered = pd.DataFrame(
        {"distance": distance.values, SAMPLE: library_size.index.astype(str).values}
    )
    ordered = ordered.sort_values(["distance", SAMPLE], kind="mergesort")
    return str(ordered[SAMPLE].iloc[0])


def compute_scale_factors(
    table: AbundanceTable,
    method: ScalingMethod = ScalingMethod.TMM,
    reference_sample: Optional[str] = None,
    factor_of_interest: Optional[str] = None,
    min_count: float = 10,
) -> ScaleFactors:
    """
    Estimate per-sample multipliers from the abundant subset of table.

    Raises:
        DegenerateSample: zero library size, or a non-finite / non-positive
            factor for some sample
    """
    if ABUNDANT_COLUMN not in table.transcript_columns:
        table = identify_abundant(table, factor_of_interest, min_count=min_count)
    subset = abundant_subset(table)

    samples = table.samples
    counts = subset.to_matrix(ABUNDANCE).reindex(columns=samples, fill_value=0)
    lib_size = counts.sum(axis=0)

    for sample in samples:
        if not lib_size[sample] > 0:
            raise DegenerateSample(
                f"Sample '{sample}' has zero total abundance across the "
                f"{len(counts)} abundant transcripts; a scale factor cannot be computed. "
                f"Suggestion: remove the sample or relax the abundance filter.",
                sample=sample,
                stage="scale_abundance",
            )

    if reference_sample is None:
        reference_sample = choose_reference(lib_size)
    elif reference_sample not in samples:
        raise UnknownColumn(
            f"Reference sample '{reference_sample}' not in table.",
            stage="scale_abundance",
            entity=reference_sample,
        )

    factors = estimate_factors(counts, method, reference_sample)

    effective = lib_size * factors
    multiplier = effective[reference_sample] / effective
    for sample in samples:
        value = multiplier[sample]
        if not (np.isfinite(factors[sample]) and factors[sample] > 0
                and np.isfinite(value) and value > 0):
            raise DegenerateSample(
                f"Sample '{sample}' got a degenerate {method.value} factor "
                f"({factors[sample]}).",
                sample=sample,
                stage="scale_abundance",
            )

    return ScaleFactors(
        library_size=lib_size,
        factor=factors,
        multiplier=multiplier,
        reference_sample=reference_sample,
        method=method,
    )


def scale_abundance(
    table: AbundanceTable,
    method: ScalingMethod = ScalingMethod.TMM,
    reference_sample: Optional[str] = None,
    factor_of_interest: Optional[str] = None,
    min_count: float = 10,
) -> AbundanceTable:
    """
    Scale abundance of every transcript by a per-sample multiplier.

    Args:
        table: Input AbundanceTable (raw 'abundance' column required)
        method: Scale factor estimator
        reference_sample: Sample with multiplier 1 (median library by default)
        factor_of_interest: Grouping used when the table has no '.abundant'
            flag yet and it must be computed internally
        min_count: Abundance threshold for that internal flagging

    Returns:
        New AbundanceTable with sample-level 'scale_factor' and 'multiplier'
        and pairwise 'abundance_scaled'
    """
    if isinstance(method, str):
        method = ScalingMethod(method)
    factors = compute_scale_factors(
        table, method, reference_sample, factor_of_interest, min_count
    )

    frame = table.to_frame()
    multiplier = frame[SAMPLE].map(factors.multiplier)
    factor = frame[SAMPLE].map(factors.factor)
    scaled = frame[ABUNDANCE] * multiplier

    result = table.with_columns(
        Axis.SAMPLE, {FACTOR_COLUMN: factor, MULTIPLIER_COLUMN: multiplier}
    ).with_columns(Axis.PAIR, {SCALED_COLUMN: scaled})

    logger.info(
        f"scale_abundance ({method.value}): reference sample "
        f"'{factors.reference_sample}', multipliers "
        f"{factors.multiplier.min():.3f}–{factors.multiplier.max():.3f}"
    )
    return result.validate()


def scaling_summary(factors: ScaleFactors) -> Dict[str, Dict[str, float]]:
    """Per-sample library size, factor and multiplier as plain dicts."""
    return {
        str(sample): {
            "library_size": float(factors.library_size[sample]),
            "factor": float(factors.factor[sample]),
            "multiplier": float(factors.multiplier[sample]),
        }
        for sample in factors.library_size.index
    }
