# pyright: reportMissingTypeArgument=false
from __future__ import annotations

"""
Count matrix and metadata ingestion.

Reads raw counts and their sample/transcript metadata from CSV, TSV or Excel
files and turns them into the transcripts × samples shape that
abundance_table.build() expects:

- Transcript column detection (known headers, then first text column)
- Orientation detection (samples as rows → transposed)
- Optional summing of duplicated transcript identifiers
"""

from dataclasses import dataclass, field
from os import PathLike
from typing import Optional, List, Any, Union
import logging
import re
import pandas as pd
import numpy as np

from abundance_table import AbundanceTable, build

logger = logging.getLogger(__name__)


KNOWN_SAMPLE_HEADERS = [
    "sample",
    "sample_id",
    "SampleID",
    "Sample_ID",
    "samplename",
    "Sample_Name",
    "samples",
]

KNOWN_TRANSCRIPT_HEADERS = [
    "transcript",
    "transcript_id",
    "feature",
    "gene",
    "Gene",
    "GENE",
    "gene_id",
    "GeneID",
    "ens_iso",
    "ensembl_gene_id",
    "SYMBOL",
    "symbol",
]

EXCEL_SUFFIXES = (".xlsx", ".xls")


class CountParseError(ValueError):
    """Raised when an input file cannot be turned into counts or metadata."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message: str = message
        self.details: dict[str, Any] = details or {}
        super().__init__(self.message)


@dataclass
class CountMatrixResult:
    """Parsed count matrix plus what was done to get it."""

    counts: pd.DataFrame  # transcripts × samples
    transcript_column: Optional[str]
    transposed: bool
    dropped_columns: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def looks_like_sample_names(values: List[str]) -> bool:
    """Check if values look like sample identifiers (not transcript names)."""
    sample_patterns = [
        r"^[Ss]ample[_-]?\d+$",
        r"^[Ss]\d+$",
        r"^(Ctrl|Control|Treat|Treated|Untreated|Treatment)[_-]?\d*",
        r"^[A-Za-z]+[_-]\d+$",
    ]
    if not values:
        return False
    match_count = sum(1 for v in values if any(re.match(p, v) for p in sample_patterns))
    return match_count >= len(values) * 0.5


def detect_transcript_column(df: pd.DataFrame) -> tuple[Optional[str], bool]:
    """
    Find the column holding transcript identifiers.

    Returns:
        (transcript_column, first_col_is_sample_id). Both are falsy when the
        table has no text column at all (identifiers are already the index).
    """
    first_col = df.columns[0]

    if str(first_col).lower() in [h.lower() for h in KNOWN_SAMPLE_HEADERS]:
        return None, True

    for col in df.columns:
        if str(col) in KNOWN_TRANSCRIPT_HEADERS:
            return str(col), False

    if not pd.api.types.is_numeric_dtype(df[first_col]):
        values = df[first_col].dropna().head(10).astype(str).tolist()
        if looks_like_sample_names(values):
            return None, True
        return str(first_col), False

    return None, False


def _read_table(file_path: str, sheet_name: Optional[str] = None) -> pd.DataFrame:
    """Read CSV/TSV (delimiter sniffed) or Excel into a raw DataFrame."""
    try:
        if file_path.endswith(EXCEL_SUFFIXES):
            excel_file = pd.ExcelFile(file_path)
            if sheet_name and sheet_name not in excel_file.sheet_names:
                available = ", ".join(excel_file.sheet_names[:5])
                raise CountParseError(
                    f"Sheet '{sheet_name}' not found. Available sheets: {available}.",
                    details={"available_sheets": excel_file.sheet_names},
                )
            df = pd.read_excel(file_path, sheet_name=sheet_name or 0)
        else:
            df = pd.read_csv(file_path, sep=",")
            if len(df.columns) == 1:
                df = pd.read_csv(file_path, sep="\t")
    except pd.errors.EmptyDataError:
        raise CountParseError(
            f"File is empty or contains no readable data: {file_path}."
        )
    except pd.errors.ParserError as e:
        raise CountParseError(
            f"Failed to parse file: {str(e)}. "
            f"Suggestion: Verify the file format is valid CSV/TSV."
        )
    except FileNotFoundError:
        raise CountParseError(
            f"File not found: {file_path}. "
            f"Suggestion: Check the file path is correct and the file exists."
        )

    if df.empty:
        raise CountParseError(f"File has a header but no data rows: {file_path}.")
    return df


def read_count_matrix(
    file_path: Union[str, PathLike[str]],
    transcript_column: Optional[str] = None,
    aggregate_duplicates: bool = False,
    sheet_name: Optional[str] = None,
) -> CountMatrixResult:
    """
    Read a raw count matrix into transcripts × samples shape.

    Args:
        file_path: CSV, TSV or Excel file
        transcript_column: Column with transcript identifiers (auto-detected
            when None)
        aggregate_duplicates: Sum rows sharing a transcript identifier;
            otherwise duplicates are kept and build() rejects them
        sheet_name: Excel sheet to read (first sheet by default)

    Returns:
        CountMatrixResult with the parsed counts

    Raises:
        CountParseError: unreadable file or no numeric sample columns
    """
    file_path = str(file_path)
    df = _read_table(file_path, sheet_name)

    if len(df.columns) < 2:
        raise CountParseError(
            f"File must have at least 2 columns (transcripts + samples), but found "
            f"{len(df.columns)}. Suggestion: Check the delimiter.",
            details={"columns": len(df.columns)},
        )

    if transcript_column is not None:
        if transcript_column not in df.columns:
            raise CountParseError(
                f"Transcript column '{transcript_column}' not found. "
                f"Available: {', '.join(map(str, df.columns[:10]))}.",
                details={"available": [str(c) for c in df.columns]},
            )
        first_col_is_sample_id = False
    else:
        transcript_column, first_col_is_sample_id = detect_transcript_column(df)

    warnings = []
    if first_col_is_sample_id:
        # samples as rows, transcripts as columns
        result = df.set_index(df.columns[0])
        transposed = True
    elif transcript_column:
        result = df.set_index(transcript_column)
        transposed = False
    else:
        result = df.copy()
        transposed = False

    numeric_cols = list(result.select_dtypes(include=[np.number]).columns)
    dropped = [str(c) for c in result.columns if c not in numeric_cols]
    if not numeric_cols:
        raise CountParseError(
            "No numeric count columns found. Suggestion: the file should contain "
            "one identifier column and one numeric column per sample.",
            details={"dropped": dropped},
        )
    result = result.loc[:, numeric_cols]
    if dropped:
        logger.info(f"Dropped {len(dropped)} non-numeric columns: {', '.join(dropped[:5])}")

    if transposed:
        result = result.T

    result.index = result.index.astype(str)
    result.columns = result.columns.astype(str)

    if result.index.duplicated().any():
        n_dups = int(result.index.duplicated().sum())
        if aggregate_duplicates:
            result = result.groupby(level=0, sort=False).sum()
            warnings.append(f"{n_dups} duplicate transcripts summed")
            logger.warning(f"{n_dups} duplicate transcript rows summed")
        else:
            warnings.append(f"{n_dups} duplicate transcripts present")

    return CountMatrixResult(
        counts=result,
        transcript_column=transcript_column,
        transposed=transposed,
        dropped_columns=dropped,
        warnings=warnings,
    )


def read_metadata(
    file_path: Union[str, PathLike[str]],
    key_column: str,
    sheet_name: Optional[str] = None,
) -> pd.DataFrame:
    """
    Read a metadata table and index it by key_column.

    Args:
        file_path: CSV, TSV or Excel file
        key_column: Column holding sample or transcript identifiers

    Returns:
        DataFrame indexed by the key column (index named after it)
    """
    df = _read_table(str(file_path), sheet_name)
    if key_column not in df.columns:
        raise CountParseError(
            f"Metadata key column '{key_column}' not found. "
            f"Available: {', '.join(map(str, df.columns[:10]))}.",
            details={"available": [str(c) for c in df.columns]},
        )
    df[key_column] = df[key_column].astype(str)
    return df.set_index(key_column)


def load_abundance_table(
    counts_path: Union[str, PathLike[str]],
    sample_metadata_path: Union[str, PathLike[str]],
    transcript_metadata_path: Optional[Union[str, PathLike[str]]] = None,
    sample_key: str = "sample",
    transcript_key: str = "transcript",
    aggregate_duplicates: bool = False,
    strict: bool = True,
) -> AbundanceTable:
    """Read counts and metadata files and build an AbundanceTable."""
    parsed = read_count_matrix(counts_path, aggregate_duplicates=aggregate_duplicates)
    sample_meta = read_metadata(sample_metadata_path, sample_key)
    sample_meta.index.name = "sample"

    transcript_meta = None
    if transcript_metadata_path is not None:
        transcript_meta = read_metadata(transcript_metadata_path, transcript_key)
        transcript_meta.index.name = "transcript"

    return build(parsed.counts, sample_meta, transcript_meta, strict=strict)
