"""
Opaque analysis stages and the join-back contract.

Dimensionality reduction, clustering, differential testing and deconvolution
are delegated to scikit-learn, SciPy, statsmodels and PyDESeq2. Each adapter
implements Stage.apply(projection, params) and returns DerivedColumns keyed by
sample or transcript. run_stage() hands the right projection to the stage,
prefixes the result columns and joins them back onto the table's axis.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging
import pandas as pd
import numpy as np
from numpy.linalg import LinAlgError
from scipy import stats
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.optimize import nnls
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA
from sklearn.manifold import MDS, TSNE
from statsmodels.stats.multitest import multipletests
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from abundance_table import (
    ABUNDANCE,
    SAMPLE,
    TRANSCRIPT,
    AbundanceTable,
    Axis,
    ColumnCollision,
    InvariantViolation,
    MissingMetadata,
    PipelineError,
    StageFailed,
    UnknownColumn,
)
from scaling import SCALED_COLUMN

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration structs
# ============================================================================


class ReductionMethod(Enum):
    PCA = "PCA"
    MDS = "MDS"
    TSNE = "tSNE"


class ClusterMethod(Enum):
    KMEANS = "kmeans"
    HIERARCHICAL = "hierarchical"


class DifferentialMethod(Enum):
    DESEQ2 = "deseq2"
    WELCH = "welch"


class DeconvolutionMethod(Enum):
    NNLS = "nnls"


@dataclass(frozen=True)
class ColumnRef:
    """A named column expected on a given axis (any metadata axis if None)."""

    name: str
    axis: Optional[Axis] = None

    def resolve(self, table: AbundanceTable) -> Axis:
        """Return the column's axis, raising UnknownColumn on a mismatch."""
        actual = table.axis_of(self.name)
        if self.axis is not None and actual != self.axis:
            raise UnknownColumn(
                f"Column '{self.name}' is {actual.value}-level, expected "
                f"{self.axis.value}-level.",
                entity=self.name,
            )
        if self.axis is None and actual == Axis.PAIR:
            raise UnknownColumn(
                f"Column '{self.name}' is pairwise; a sample- or transcript-level "
                f"column is required.",
                entity=self.name,
            )
        return actual


@dataclass
class StageParams:
    """Parameters shared by every opaque stage."""

    method: Enum
    prefix: Optional[str] = None
    grouping_column: Optional[ColumnRef] = None
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Projection:
    """What a stage gets to see of the table."""

    matrix: pd.DataFrame  # transcripts × samples, chosen abundance column
    raw: pd.DataFrame  # transcripts × samples, raw abundance
    sample_wise: pd.DataFrame
    transcript_wise: pd.DataFrame
    abundance_column: str

    @classmethod
    def from_table(
        cls, table: AbundanceTable, abundance_column: Optional[str] = None
    ) -> "Projection":
        if abundance_column is None:
            abundance_column = (
                SCALED_COLUMN if SCALED_COLUMN in table.pair_columns else ABUNDANCE
            )
        raw = table.to_matrix(ABUNDANCE)
        matrix = raw if abundance_column == ABUNDANCE else table.to_matrix(abundance_column)
        return cls(
            matrix=matrix,
            raw=raw,
            sample_wise=table.sample_wise(),
            transcript_wise=table.transcript_wise(),
            abundance_column=abundance_column,
        )


@dataclass
class DerivedColumns:
    """Stage output: new columns keyed by sample or transcript."""

    axis: Axis
    frame: pd.DataFrame


class Stage(ABC):
    """One opaque external method behind a single apply() call."""

    name: str = "stage"
    axis: Axis = Axis.SAMPLE
    default_prefixes: Dict[Enum, str] = {}

    @abstractmethod
    def apply(self, projection: Projection, params: StageParams) -> DerivedColumns:
        ...

    def prefix_for(self, params: StageParams) -> str:
        if params.prefix is not None:
            return params.prefix
        return self.default_prefixes.get(params.method, f"{params.method.value}_")


# ============================================================================
# Join-back
# ============================================================================


def join_back(table: AbundanceTable, derived: DerivedColumns, prefix: str) -> AbundanceTable:
    """
    Join stage output onto the table's sample or transcript axis.

    Every non-key column is renamed to prefix + name.

    Raises:
        InvariantViolation: output is pairwise or has duplicate keys
        ColumnCollision: a prefixed name already exists on the table
    """
    if derived.axis == Axis.PAIR:
        raise InvariantViolation(
            "Stage output must be keyed by sample or transcript, not both."
        )
    key = SAMPLE if derived.axis == Axis.SAMPLE else TRANSCRIPT
    frame = derived.frame.copy()
    if key not in frame.columns:
        frame = frame.rename_axis(key).reset_index()
    frame[key] = frame[key].astype(str)

    if frame[key].duplicated().any():
        dup = frame.loc[frame[key].duplicated(), key].iloc[0]
        raise InvariantViolation(
            f"Stage output has duplicate {key} '{dup}'.",
            column=key,
            entity=str(dup),
        )

    renamed = {c: f"{prefix}{c}" for c in frame.columns if c != key}
    collisions = [n for n in renamed.values() if n in table.columns]
    if collisions:
        raise ColumnCollision(
            f"Columns already present: {', '.join(collisions)}. "
            f"Suggestion: use a different prefix for this stage.",
            entity=collisions[0],
        )
    frame = frame.rename(columns=renamed)

    unknown = set(frame[key]) - set(table.samples if key == SAMPLE else table.transcripts)
    if unknown:
        logger.debug(f"Ignoring {len(unknown)} {key}s absent from the table")

    merged = table.to_frame().merge(frame, on=key, how="left", validate="many_to_one")
    new_cols = list(renamed.values())
    if derived.axis == Axis.SAMPLE:
        return table.with_frame(
            merged, sample_columns=list(table.sample_columns) + new_cols
        )
    return table.with_frame(
        merged, transcript_columns=list(table.transcript_columns) + new_cols
    )


def run_stage(table: AbundanceTable, stage: Stage, params: StageParams) -> AbundanceTable:
    """Select the projection, apply the stage, join back and validate."""
    try:
        if params.grouping_column is not None:
            params.grouping_column.resolve(table)
        projection = Projection.from_table(table, params.options.get("abundance_column"))
        derived = stage.apply(projection, params)
        if derived.axis != stage.axis:
            raise InvariantViolation(
                f"{stage.name} returned {derived.axis.value}-level output, expected "
                f"{stage.axis.value}-level."
            )
        prefix = stage.prefix_for(params)
        result = join_back(table, derived, prefix).validate()
    except PipelineError as e:
        e.stage = e.stage or stage.name
        raise
    except (ValueError, RuntimeError, LinAlgError) as e:
        logger.error(f"{stage.name} failed: {str(e)}")
        raise StageFailed(str(e), stage=stage.name) from e
    logger.info(
        f"{stage.name} ({params.method.value}): added "
        f"{len(derived.frame.columns) - 1} {derived.axis.value}-level columns "
        f"with prefix '{prefix}'"
    )
    return result


def top_transcripts(
    table: AbundanceTable, column: str, n: int = 10, ascending: bool = True
) -> List[str]:
    """
    Top n transcripts by a transcript-level column.

    Transcript identifier is the secondary sort key, so equal values (e.g.
    identical padj) are ordered deterministically. Null values sort last.
    """
    ColumnRef(column, Axis.TRANSCRIPT).resolve(table)
    df = table.transcript_wise()
    df = df.sort_values(
        [column, TRANSCRIPT],
        ascending=[ascending, True],
        na_position="last",
        kind="mergesort",
    )
    return df[TRANSCRIPT].head(n).tolist()


# ============================================================================
# Helpers
# ============================================================================


def _most_variable(matrix: pd.DataFrame, top: Optional[int]) -> pd.DataFrame:
    """Top rows by variance, ties broken by transcript id."""
    if top is None or top >= len(matrix):
        return matrix
    variances = pd.DataFrame(
        {"variance": matrix.var(axis=1).values, TRANSCRIPT: matrix.index.astype(str)}
    )
    variances = variances.sort_values(
        ["variance", TRANSCRIPT], ascending=[False, True], kind="mergesort"
    )
    return matrix.loc[variances[TRANSCRIPT].head(top).values]


def _sample_features(projection: Projection, params: StageParams) -> pd.DataFrame:
    """samples × transcripts feature matrix (log1p, most variable)."""
    matrix = projection.matrix
    if params.options.get("log_transform", True):
        matrix = np.log1p(matrix)
    matrix = _most_variable(matrix, params.options.get("top", 500))
    return matrix.T


def _contrast_levels(
    projection: Projection, params: StageParams
) -> Tuple[str, str, str, pd.Series]:
    """(factor, test level, reference level, sample → level) for a two-group test."""
    if params.grouping_column is None:
        raise UnknownColumn(
            "Differential testing needs a grouping_column (sample-level factor).",
        )
    factor = params.grouping_column.name
    if factor not in projection.sample_wise.columns:
        raise UnknownColumn(
            f"Grouping column '{factor}' is not sample-level.", entity=factor
        )
    labels = projection.sample_wise.set_index(SAMPLE)[factor]
    if labels.isna().any():
        missing = labels.index[labels.isna()].tolist()
        raise MissingMetadata(
            f"Samples without a '{factor}' value: {', '.join(missing[:5])}. "
            f"Suggestion: fill in '{factor}' or drop those samples before testing.",
            entity=missing[0],
        )
    labels = labels.astype(str)

    contrast = params.options.get("contrast")
    if contrast is None:
        levels = sorted(labels.unique())
        if len(levels) != 2:
            raise ValueError(
                f"'{factor}' has {len(levels)} levels ({', '.join(levels)}); "
                f"pass options['contrast'] = (test, reference)."
            )
        # first level alphabetically is the reference
        reference, test = levels
    else:
        test, reference = (str(x) for x in contrast)
        for level in (test, reference):
            if level not in set(labels):
                raise ValueError(f"Level '{level}' not found in '{factor}'")
    return factor, test, reference, labels


# ============================================================================
# Adapters
# ============================================================================


class ReduceDimensionsStage(Stage):
    """PCA, MDS or t-SNE coordinates per sample."""

    name = "reduce_dimensions"
    axis = Axis.SAMPLE
    default_prefixes = {
        ReductionMethod.PCA: "PC",
        ReductionMethod.MDS: "Dim",
        ReductionMethod.TSNE: "tSNE",
    }

    def apply(self, projection: Projection, params: StageParams) -> DerivedColumns:
        data = _sample_features(projection, params)
        n_samples, n_features = data.shape
        n_components = int(params.options.get("n_components", 2))
        random_state = params.options.get("random_state", 42)

        if n_components > min(n_samples, n_features):
            raise ValueError(
                f"Cannot compute {n_components} dimensions from {n_samples} samples "
                f"× {n_features} transcripts."
            )

        method = params.method
        if method == ReductionMethod.PCA:
            model = PCA(n_components=n_components)
            coords = model.fit_transform(data.values)
            logger.debug(
                f"PCA explained variance: {np.round(model.explained_variance_ratio_, 3)}"
            )
        elif method == ReductionMethod.MDS:
            model = MDS(n_components=n_components, random_state=random_state)
            coords = model.fit_transform(data.values)
        elif method == ReductionMethod.TSNE:
            perplexity = params.options.get(
                "perplexity", min(30.0, max(1.0, (n_samples - 1) / 3))
            )
            model = TSNE(
                n_components=n_components,
                perplexity=perplexity,
                init="pca",
                random_state=random_state,
            )
            coords = model.fit_transform(data.values)
        else:
            raise ValueError(f"Unknown reduction method: {method}")

        frame = pd.DataFrame(
            coords,
            index=data.index,
            columns=[str(i + 1) for i in range(n_components)],
        )
        frame.index.name = SAMPLE
        return DerivedColumns(Axis.SAMPLE, frame.reset_index())


class ClusterStage(Stage):
    """Cluster labels per sample (k-means or average-linkage hierarchical)."""

    name = "cluster_elements"
    axis = Axis.SAMPLE
    default_prefixes = {
        ClusterMethod.KMEANS: "cluster_",
        ClusterMethod.HIERARCHICAL: "cluster_",
    }

    def apply(self, projection: Projection, params: StageParams) -> DerivedColumns:
        data = _sample_features(projection, params)
        n_clusters = int(params.options.get("n_clusters", 2))
        if n_clusters > len(data):
            raise ValueError(
                f"Cannot form {n_clusters} clusters from {len(data)} samples."
            )

        if params.method == ClusterMethod.KMEANS:
            model = KMeans(
                n_clusters=n_clusters,
                n_init=10,
                random_state=params.options.get("random_state", 42),
            )
            labels = model.fit_predict(data.values) + 1
        elif params.method == ClusterMethod.HIERARCHICAL:
            Z = linkage(data.values, method="average", metric="euclidean")
            labels = fcluster(Z, t=n_clusters, criterion="maxclust")
        else:
            raise ValueError(f"Unknown cluster method: {params.method}")

        frame = pd.DataFrame(
            {SAMPLE: data.index.astype(str), params.method.value: [str(label) for label in labels]}
        )
        return DerivedColumns(Axis.SAMPLE, frame)


class DifferentialStage(Stage):
    """Two-group differential abundance statistics per transcript."""

    name = "test_differential_abundance"
    axis = Axis.TRANSCRIPT

    def apply(self, projection: Projection, params: StageParams) -> DerivedColumns:
        factor, test, reference, labels = _contrast_levels(projection, params)
        if params.method == DifferentialMethod.DESEQ2:
            results = self._deseq2(projection.raw, labels, factor, test, reference)
        elif params.method == DifferentialMethod.WELCH:
            results = self._welch(projection.matrix, labels, test, reference)
        else:
            raise ValueError(f"Unknown differential method: {params.method}")

        n_sig = int((results["padj"] < params.options.get("padj_threshold", 0.05)).sum())
        logger.info(f"{params.method.value}: {test} vs {reference}, {n_sig} significant transcripts")
        results.index.name = TRANSCRIPT
        return DerivedColumns(Axis.TRANSCRIPT, results.reset_index())

    @staticmethod
    def _deseq2(
        counts: pd.DataFrame,
        labels: pd.Series,
        factor: str,
        test: str,
        reference: str,
    ) -> pd.DataFrame:
        """Fit PyDESeq2 once and extract the single contrast."""
        if not np.allclose(counts.values, np.round(counts.values)):
            raise ValueError("DESeq2 requires integer raw counts in 'abundance'.")

        samples = [s for s in counts.columns if labels[s] in (test, reference)]
        counts_df = counts[samples].T.round().astype(int)  # samples × transcripts
        metadata = pd.DataFrame({factor: labels[samples].values}, index=samples)

        dds = DeseqDataSet(
            counts=counts_df,
            metadata=metadata,
            design=f"~{factor}",
            refit_cooks=True,
            quiet=True,
        )
        dds.deseq2()

        stat_res = DeseqStats(dds, contrast=[factor, test, reference], quiet=True)
        stat_res.summary()

        results = stat_res.results_df.copy()
        results.index = results.index.astype(str)
        return results.reindex(counts.index.astype(str))

    @staticmethod
    def _welch(
        matrix: pd.DataFrame, labels: pd.Series, test: str, reference: str
    ) -> pd.DataFrame:
        """Welch t-test on log2(x + 1) with Benjamini-Hochberg correction."""
        log_expr = np.log2(matrix + 1)
        test_samples = [s for s in log_expr.columns if labels[s] == test]
        ref_samples = [s for s in log_expr.columns if labels[s] == reference]
        if len(test_samples) < 2 or len(ref_samples) < 2:
            raise ValueError(
                f"Welch test needs at least 2 samples per group "
                f"({test}: {len(test_samples)}, {reference}: {len(ref_samples)})."
            )

        a = log_expr[test_samples].values
        b = log_expr[ref_samples].values
        with np.errstate(divide="ignore", invalid="ignore"):
            stat, pvalue = stats.ttest_ind(a, b, axis=1, equal_var=False)

        padj = np.full(len(pvalue), np.nan)
        finite = np.isfinite(pvalue)
        if finite.any():
            padj[finite] = multipletests(pvalue[finite], method="fdr_bh")[1]

        return pd.DataFrame(
            {
                "log2FoldChange": a.mean(axis=1) - b.mean(axis=1),
                "stat": stat,
                "pvalue": pvalue,
                "padj": padj,
            },
            index=matrix.index.astype(str),
        )


class DeconvolutionStage(Stage):
    """Cell-type proportions per sample by NNLS against a signature matrix."""

    name = "deconvolve_cellularity"
    axis = Axis.SAMPLE
    default_prefixes = {DeconvolutionMethod.NNLS: "nnls_"}

    def apply(self, projection: Projection, params: StageParams) -> DerivedColumns:
        signature = params.options.get("signature")
        if signature is None or signature.empty:
            raise ValueError("Deconvolution needs options['signature'] (genes × cell types).")

        expression = projection.matrix
        feature_column = params.options.get("feature_column")
        if feature_column is not None:
            mapping = projection.transcript_wise.set_index(TRANSCRIPT)[feature_column]
            expression = expression.groupby(mapping.reindex(expression.index).values).sum()

        common = expression.index.intersection(signature.index)
        min_overlap = int(params.options.get("min_overlap", 50))
        if len(common) < min_overlap:
            raise ValueError(
                f"Insufficient gene overlap for deconvolution: only {len(common)} genes "
                f"found in common between expression data ({len(expression)}) and "
                f"signature matrix ({len(signature)}). Need at least {min_overlap}."
            )

        expr = expression.loc[common]
        sig = signature.loc[common].astype(float)

        def solve(sample: str) -> np.ndarray:
            coef, _ = nnls(sig.values, expr[sample].values.astype(float))
            total = coef.sum()
            return coef / total if total > 0 else coef

        n_workers = int(params.options.get("n_workers", 1))
        samples = list(expr.columns)
        if n_workers > 1:
            with ThreadPoolExecutor(max_workers=n_workers) as pool:
                proportions = list(pool.map(solve, samples))
        else:
            proportions = [solve(s) for s in samples]

        frame = pd.DataFrame(proportions, index=samples, columns=[str(c) for c in sig.columns])
        frame.index.name = SAMPLE
        return DerivedColumns(Axis.SAMPLE, frame.reset_index())


STAGES: Dict[str, Stage] = {
    "reduce_dimensions": ReduceDimensionsStage(),
    "cluster_elements": ClusterStage(),
    "test_differential_abundance": DifferentialStage(),
    "deconvolve_cellularity": DeconvolutionStage(),
}

METHODS: Dict[str, type] = {
    "reduce_dimensions": ReductionMethod,
    "cluster_elements": ClusterMethod,
    "test_differential_abundance": DifferentialMethod,
    "deconvolve_cellularity": DeconvolutionMethod,
}


def reduce_dimensions(
    table: AbundanceTable,
    method: ReductionMethod = ReductionMethod.PCA,
    prefix: Optional[str] = None,
    **options,
) -> AbundanceTable:
    return run_stage(table, STAGES["reduce_dimensions"], StageParams(method, prefix, options=options))


def cluster_elements(
    table: AbundanceTable,
    method: ClusterMethod = ClusterMethod.KMEANS,
    prefix: Optional[str] = None,
    **options,
) -> AbundanceTable:
    return run_stage(table, STAGES["cluster_elements"], StageParams(method, prefix, options=options))


def test_differential_abundance(
    table: AbundanceTable,
    grouping_column: str,
    method: DifferentialMethod = DifferentialMethod.DESEQ2,
    prefix: Optional[str] = None,
    **options,
) -> AbundanceTable:
    params = StageParams(method, prefix, ColumnRef(grouping_column, Axis.SAMPLE), options)
    return run_stage(table, STAGES["test_differential_abundance"], params)


def deconvolve_cellularity(
    table: AbundanceTable,
    signature: pd.DataFrame,
    method: DeconvolutionMethod = DeconvolutionMethod.NNLS,
    prefix: Optional[str] = None,
    **options,
) -> AbundanceTable:
    options["signature"] = signature
    return run_stage(table, STAGES["deconvolve_cellularity"], StageParams(method, prefix, options=options))
