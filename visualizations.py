"""
Interactive visualizations of an AbundanceTable using Plotly.

Every figure is built from the table's projections (sample-wise,
transcript-wise or a pivoted abundance matrix), never from stage internals.
"""

from typing import List, Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import pdist

from abundance_table import ABUNDANCE, SAMPLE, TRANSCRIPT, AbundanceTable, UnknownColumn
from scaling import SCALED_COLUMN


def create_reduced_dimensions_plot(
    table: AbundanceTable,
    prefix: str = "PC",
    color_by: Optional[str] = None,
    dims: tuple = (1, 2),
) -> go.Figure:
    """
    Scatter samples on two reduced dimensions joined back by reduce_dimensions().

    Args:
        table: AbundanceTable carrying sample-level '<prefix>1', '<prefix>2', ...
        prefix: Column prefix used by the reduction stage
        color_by: Optional sample-level column for coloring
        dims: Which two dimensions to plot

    Returns:
        Plotly Figure object
    """
    x_col, y_col = (f"{prefix}{d}" for d in dims)
    missing = [c for c in (x_col, y_col) if c not in table.sample_columns]
    if missing:
        raise UnknownColumn(
            f"Cannot create reduced dimensions plot: missing sample-level columns "
            f"{missing}. Suggestion: run reduce_dimensions() with prefix '{prefix}' first.",
            entity=missing[0],
        )
    if color_by is not None and color_by not in table.sample_columns:
        raise UnknownColumn(
            f"Cannot color by '{color_by}': not a sample-level column.",
            entity=color_by,
        )

    df = table.sample_wise()
    fig = px.scatter(
        df,
        x=x_col,
        y=y_col,
        color=color_by,
        hover_name=SAMPLE,
    )
    fig.update_traces(marker=dict(size=11))
    fig.update_layout(title=f"{prefix}{dims[0]} vs {prefix}{dims[1]}", showlegend=color_by is not None)

    return fig


def create_abundance_density_plot(
    table: AbundanceTable, color_by: Optional[str] = None
) -> go.Figure:
    """
    Per-sample log1p abundance distributions, raw next to scaled.

    The scaled facet is only drawn when the table carries 'abundance_scaled'.
    """
    columns = [ABUNDANCE] + ([SCALED_COLUMN] if SCALED_COLUMN in table.pair_columns else [])
    frame = table.to_frame()
    keep = [SAMPLE] + ([color_by] if color_by else []) + columns
    long_df = frame.loc[:, keep].melt(
        id_vars=[c for c in keep if c not in columns],
        value_vars=columns,
        var_name="source",
        value_name="value",
    )
    long_df["log1p_value"] = np.log1p(long_df["value"])

    fig = px.histogram(
        long_df,
        x="log1p_value",
        color=color_by or SAMPLE,
        facet_col="source",
        histnorm="probability density",
        barmode="overlay",
        opacity=0.5,
        nbins=50,
        labels={"log1p_value": "log(1 + abundance)"},
    )
    fig.update_layout(title="Abundance Distribution", height=450)

    return fig


def create_volcano_plot(
    table: AbundanceTable,
    prefix: str = "deseq2_",
    lfc_threshold: float = 1.0,
    padj_threshold: float = 0.05,
    label_column: Optional[str] = None,
    top_n_labels: int = 10,
) -> go.Figure:
    """
    Create interactive volcano plot from joined-back differential results.

    Args:
        table: AbundanceTable with transcript-level '<prefix>log2FoldChange'
            and '<prefix>padj'
        prefix: Prefix used by test_differential_abundance()
        lfc_threshold: Log2 fold change threshold for significance (default: 1.0)
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        label_column: Transcript-level column used for point labels
            (transcript id if None)

    Returns:
        Plotly Figure object
    """
    lfc_col = f"{prefix}log2FoldChange"
    padj_col = f"{prefix}padj"
    missing = [c for c in (lfc_col, padj_col) if c not in table.transcript_columns]
    if missing:
        raise UnknownColumn(
            f"Cannot create volcano plot: missing transcript-level columns {missing}. "
            f"Suggestion: run test_differential_abundance() with prefix '{prefix}' first.",
            entity=missing[0],
        )

    df = table.transcript_wise().rename(
        columns={lfc_col: "log2FoldChange", padj_col: "padj"}
    )
    label = label_column or TRANSCRIPT

    # NaN padj is normal for transcripts PyDESeq2 filtered independently
    df = df.dropna(subset=["padj", "log2FoldChange"])
    if df.empty:
        raise ValueError(
            "Cannot create volcano plot: all padj values are NaN. "
            "Ensure differential testing completed successfully."
        )

    df["-log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))
    df["significance"] = np.select(
        [
            (df["padj"] < padj_threshold) & (df["log2FoldChange"] > lfc_threshold),
            (df["padj"] < padj_threshold) & (df["log2FoldChange"] < -lfc_threshold),
        ],
        ["Up", "Down"],
        default="NS",
    )

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_padj",
        color="significance",
        hover_name=label,
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "-log10_padj": False,
            "significance": False,
        },
        color_discrete_map={"Up": "red", "Down": "blue", "NS": "lightgray"},
        labels={"log2FoldChange": "log₂(Fold Change)", "-log10_padj": "-log₁₀(padj)"},
    )

    fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top = df[df["padj"] < padj_threshold].sort_values(
            ["padj", TRANSCRIPT], kind="mergesort"
        ).head(top_n_labels)
        if not top.empty:
            fig.add_trace(
                go.Scatter(
                    x=top["log2FoldChange"],
                    y=top["-log10_padj"],
                    mode="text",
                    text=top[label].astype(str),
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title="Volcano Plot", showlegend=True)

    return fig


def create_abundance_heatmap(
    table: AbundanceTable,
    transcripts: Optional[List[str]] = None,
    abundance_column: Optional[str] = None,
    top_n: int = 50,
    z_score: bool = True,
    group_by: Optional[str] = None,
) -> go.Figure:
    """
    Create heatmap of transcripts × samples with row clustering.

    Args:
        table: Input AbundanceTable
        transcripts: Transcripts to show (top_n most variable if None)
        abundance_column: Pairwise column to plot ('abundance_scaled' when
            present, else 'abundance')
        top_n: Number of transcripts when none are given
        z_score: Z-score each transcript across samples
        group_by: Optional sample-level column to order samples by

    Returns:
        Plotly Figure object
    """
    if abundance_column is None:
        abundance_column = SCALED_COLUMN if SCALED_COLUMN in table.pair_columns else ABUNDANCE
    matrix = np.log2(table.to_matrix(abundance_column) + 1)

    if transcripts is None:
        variances = matrix.var(axis=1)
        transcripts = variances.sort_values(ascending=False, kind="mergesort").head(top_n).index.tolist()
    else:
        absent = [t for t in transcripts if t not in matrix.index]
        if absent:
            raise ValueError(
                f"Cannot create heatmap: {len(absent)} transcripts not in table: "
                f"{', '.join(absent[:3])}{'...' if len(absent) > 3 else ''}."
            )
    plot_data = matrix.loc[transcripts]

    if z_score:
        std = plot_data.std(axis=1).replace(0, np.nan)
        plot_data = plot_data.sub(plot_data.mean(axis=1), axis=0).div(std, axis=0).fillna(0)

    if group_by is not None:
        groups = table.sample_wise().set_index(SAMPLE)[group_by].astype(str)
        sample_order = sorted(plot_data.columns, key=lambda s: (groups.get(s, ""), s))
        plot_data = plot_data[sample_order]

    if len(plot_data) > 1:
        linkage_matrix = linkage(pdist(plot_data.values, metric="euclidean"), method="average")
        plot_data = plot_data.iloc[leaves_list(linkage_matrix)]

    fig = go.Figure(
        data=go.Heatmap(
            z=plot_data.values,
            x=plot_data.columns,
            y=plot_data.index,
            colorscale="RdBu_r",
            zmid=0 if z_score else None,
            hovertemplate="Transcript: %{y}<br>Sample: %{x}<br>Value: %{z:.2f}<extra></extra>",
        )
    )
    fig.update_layout(
        title=f"Abundance Heatmap ({len(plot_data)} Transcripts)",
        xaxis_title="Samples",
        yaxis_title="Transcripts",
        height=max(400, len(plot_data) * 10),
    )

    return fig
