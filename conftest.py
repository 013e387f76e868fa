"""
Pytest configuration and fixtures for Tidy Abundance Pipeline tests.
"""

import pytest
import pandas as pd

from abundance_table import build
from demo_data import load_cell_mixture, load_pasilla_like


# ============================================================================
# Small Hand-made Tables
# ============================================================================


@pytest.fixture
def scenario_a_counts():
    """2 samples × 3 transcripts; t1 is zero in control."""
    return pd.DataFrame(
        [[10, 0], [5, 5], [100, 200]],
        index=["t1", "t2", "t3"],
        columns=["s_treated", "s_control"],
    )


@pytest.fixture
def scenario_a_metadata():
    return pd.DataFrame(
        {"group": ["treated", "control"]},
        index=["s_treated", "s_control"],
    )


@pytest.fixture
def scenario_a_table(scenario_a_counts, scenario_a_metadata):
    return build(scenario_a_counts, scenario_a_metadata)


@pytest.fixture
def four_sample_counts():
    """
    4 samples × 6 transcripts of integer counts.
    't_low' is below 10 everywhere, 't_zero' is all zero.
    """
    return pd.DataFrame(
        {
            "A1": [120, 30, 500, 15, 3, 0],
            "A2": [140, 25, 480, 12, 2, 0],
            "B1": [60, 90, 510, 40, 4, 0],
            "B2": [55, 110, 530, 35, 1, 0],
        },
        index=["t_down", "t_up", "t_flat", "t_mid", "t_low", "t_zero"],
    )


@pytest.fixture
def four_sample_metadata():
    return pd.DataFrame(
        {
            "sample": ["A1", "A2", "B1", "B2"],
            "condition": ["ctrl", "ctrl", "drug", "drug"],
            "batch": ["b1", "b2", "b1", "b2"],
        }
    )


@pytest.fixture
def transcript_annotation():
    return pd.DataFrame(
        {
            "transcript": ["t_down", "t_up", "t_flat", "t_mid", "t_low", "t_zero"],
            "symbol": ["DWN", "UPP", "FLT", "MID", "LOW", "ZER"],
            "biotype": ["protein_coding"] * 4 + ["lncRNA", "lncRNA"],
        }
    )


@pytest.fixture
def four_sample_table(four_sample_counts, four_sample_metadata, transcript_annotation):
    return build(four_sample_counts, four_sample_metadata, transcript_annotation)


# ============================================================================
# Synthetic Datasets
# ============================================================================


@pytest.fixture
def pasilla_data():
    """(counts, sample_metadata, transcript_metadata) for a 7-sample design."""
    return load_pasilla_like(n_transcripts=300, seed=42)


@pytest.fixture
def pasilla_table(pasilla_data):
    counts, sample_metadata, transcript_metadata = pasilla_data
    return build(counts, sample_metadata, transcript_metadata)


@pytest.fixture
def mixture_data():
    """(counts, sample_metadata, signature, true_proportions)."""
    return load_cell_mixture()

