"""
Synthetic example datasets.

- load_pasilla_like(): 7-sample treated/untreated design modelled on the
  pasilla knock-down experiment (two sequencing types, uneven depth)
- load_cell_mixture(): bulk samples mixed from a known signature matrix,
  for deconvolution
"""

from typing import Dict, Tuple
import pandas as pd
import numpy as np

PASILLA_SAMPLES = {
    "untreated1": ("untreated", "single_end"),
    "untreated2": ("untreated", "single_end"),
    "untreated3": ("untreated", "paired_end"),
    "untreated4": ("untreated", "paired_end"),
    "treated1": ("treated", "single_end"),
    "treated2": ("treated", "paired_end"),
    "treated3": ("treated", "paired_end"),
}


def load_pasilla_like(
    n_transcripts: int = 400, seed: int = 42
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Generate a pasilla-like count dataset.

    Returns:
        Tuple of (counts_df, sample_metadata, transcript_metadata):
        - counts_df: transcripts × samples integer counts
          (index=FBgn-style ids, columns=sample names)
        - sample_metadata: index=sample names, columns "condition"
          (treated/untreated) and "type" (single_end/paired_end)
        - transcript_metadata: index=transcript ids, column "symbol"

    Dataset characteristics:
    - Sequencing depth differs up to ~2x between samples
    - The first 5% of transcripts are up 4x in treated, the next 5% down 4x
    - The last 10% are near-zero and are removed by abundance filtering
    - paired_end samples carry a mild batch effect
    """
    rng = np.random.RandomState(seed)

    samples = list(PASILLA_SAMPLES)
    transcripts = [f"FBgn{i:07d}" for i in range(1, n_transcripts + 1)]

    base_means = rng.lognormal(mean=5, sigma=1.5, size=n_transcripts)
    n_low = n_transcripts // 10
    base_means[-n_low:] = rng.uniform(0, 1.5, size=n_low)

    n_de = max(1, n_transcripts // 20)
    fold = np.ones(n_transcripts)
    fold[:n_de] = 4.0
    fold[n_de:2 * n_de] = 0.25

    depth = rng.uniform(0.7, 1.4, size=len(samples))
    batch = rng.lognormal(0, 0.2, size=n_transcripts)

    counts = np.zeros((n_transcripts, len(samples)), dtype=int)
    for j, sample in enumerate(samples):
        condition, seq_type = PASILLA_SAMPLES[sample]
        mu = base_means * depth[j]
        if condition == "treated":
            mu = mu * fold
        if seq_type == "paired_end":
            mu = mu * batch
        # negative binomial via gamma-Poisson mixture (dispersion 0.05)
        mu = rng.gamma(shape=20.0, scale=mu / 20.0)
        counts[:, j] = rng.poisson(mu)

    counts_df = pd.DataFrame(counts, index=transcripts, columns=samples)
    counts_df.index.name = "transcript"

    sample_metadata = pd.DataFrame(
        {
            "condition": [PASILLA_SAMPLES[s][0] for s in samples],
            "type": [PASILLA_SAMPLES[s][1] for s in samples],
        },
        index=pd.Index(samples, name="sample"),
    )
    transcript_metadata = pd.DataFrame(
        {"symbol": [f"gene{i}" for i in range(1, n_transcripts + 1)]},
        index=pd.Index(transcripts, name="transcript"),
    )
    return counts_df, sample_metadata, transcript_metadata


def load_cell_mixture(
    n_genes: int = 120,
    cell_types: Tuple[str, ...] = ("T_cell", "B_cell", "Monocyte"),
    n_samples: int = 5,
    seed: int = 7,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Generate bulk samples as noisy mixtures of a reference signature.

    Returns:
        Tuple of (counts_df, sample_metadata, signature, true_proportions):
        - counts_df: genes × samples
        - sample_metadata: index=sample names, column "donor"
        - signature: genes × cell types
        - true_proportions: samples × cell types (rows sum to 1)
    """
    rng = np.random.RandomState(seed)
    genes = [f"GENE{i:04d}" for i in range(1, n_genes + 1)]
    samples = [f"mix{i}" for i in range(1, n_samples + 1)]

    # each cell type has its own block of marker genes
    signature = rng.uniform(1, 20, size=(n_genes, len(cell_types)))
    block = n_genes // len(cell_types)
    for k in range(len(cell_types)):
        signature[k * block:(k + 1) * block, k] *= 25

    proportions = rng.dirichlet(np.ones(len(cell_types)) * 2, size=n_samples)
    expected = signature @ proportions.T * 10
    counts = rng.poisson(expected)

    signature_df = pd.DataFrame(signature, index=genes, columns=list(cell_types))
    counts_df = pd.DataFrame(counts, index=genes, columns=samples)
    sample_metadata = pd.DataFrame(
        {"donor": [f"donor{i % 2 + 1}" for i in range(n_samples)]},
        index=pd.Index(samples, name="sample"),
    )
    true_proportions = pd.DataFrame(proportions, index=samples, columns=list(cell_types))
    return counts_df, sample_metadata, signature_df, true_proportions


def describe_dataset(counts_df: pd.DataFrame, sample_metadata: pd.DataFrame) -> Dict[str, object]:
    """Small summary dict of a count matrix and its sample metadata."""
    return {
        "n_transcripts": int(counts_df.shape[0]),
        "n_samples": int(counts_df.shape[1]),
        "library_sizes": counts_df.sum(axis=0).astype(int).to_dict(),
        "groups": {
            col: sample_metadata[col].value_counts().to_dict()
            for col in sample_metadata.columns
        },
    }
