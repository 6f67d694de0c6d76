"""TSV download file writer with provenance sidecar."""

from datetime import datetime, timezone
from pathlib import Path

import polars as pl
import yaml

from bgee_pipeline.calls.merge import (
    ANAT_ENTITY_ID_COLUMN,
    ANAT_ENTITY_NAME_COLUMN,
    DATA_COLUMNS,
    EXPRESSION_COLUMN,
    GENE_ID_COLUMN,
    GENE_NAME_COLUMN,
    STAGE_ID_COLUMN,
    STAGE_NAME_COLUMN,
)
from bgee_pipeline.config.schema import EXPR_COMPLETE, EXPR_SIMPLE

_ID_NAME_COLUMNS = [
    GENE_ID_COLUMN,
    GENE_NAME_COLUMN,
    STAGE_ID_COLUMN,
    STAGE_NAME_COLUMN,
    ANAT_ENTITY_ID_COLUMN,
    ANAT_ENTITY_NAME_COLUMN,
]

SIMPLE_COLUMNS = [*_ID_NAME_COLUMNS, EXPRESSION_COLUMN]

COMPLETE_COLUMNS = [
    *_ID_NAME_COLUMNS,
    *[column for columns in DATA_COLUMNS.values() for column in columns],
    EXPRESSION_COLUMN,
]

HEADERS = {
    EXPR_SIMPLE: SIMPLE_COLUMNS,
    EXPR_COMPLETE: COMPLETE_COLUMNS,
}


def build_download_frame(
    rows: list[dict[str, str]],
    names: dict[str, dict[str, str]],
    file_type: str,
) -> pl.DataFrame:
    """
    Build the DataFrame of a download file from merged rows.

    Args:
        rows: Merged rows as returned by merge_calls
        names: Output of CallStore.load_names (gene, anat_entity, stage name maps)
        file_type: expr-simple or expr-complete

    Returns:
        DataFrame with the header set of the file type, in row order

    Notes:
        - Unknown IDs get an empty name
        - Rows are expected to be already sorted (merge_calls sorts them)
    """
    columns = HEADERS[file_type]

    if not rows:
        return pl.DataFrame(schema={column: pl.Utf8 for column in columns})

    df = pl.DataFrame(rows)
    df = df.with_columns(
        pl.col(GENE_ID_COLUMN)
        .replace_strict(names["gene"], default="", return_dtype=pl.Utf8)
        .alias(GENE_NAME_COLUMN),
        pl.col(STAGE_ID_COLUMN)
        .replace_strict(names["stage"], default="", return_dtype=pl.Utf8)
        .alias(STAGE_NAME_COLUMN),
        pl.col(ANAT_ENTITY_ID_COLUMN)
        .replace_strict(names["anat_entity"], default="", return_dtype=pl.Utf8)
        .alias(ANAT_ENTITY_NAME_COLUMN),
    )
    return df.select(columns)


def write_download_file(
    df: pl.DataFrame,
    output_dir: Path,
    species_id: str,
    file_type: str,
    provenance: dict | None = None,
) -> dict:
    """
    Write a download file as TSV with a YAML provenance sidecar.

    Args:
        df: DataFrame built by build_download_frame
        output_dir: Directory to write output files (created if doesn't exist)
        species_id: Species of the file, used in the file name
        file_type: expr-simple or expr-complete
        provenance: Optional run metadata (ProvenanceTracker.create_metadata())

    Returns:
        Dictionary with output file paths:
        {
            "tsv": Path to TSV file,
            "provenance": Path to YAML provenance sidecar
        }
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    filename_base = f"{species_id}_{file_type}"
    tsv_path = output_dir / f"{filename_base}.tsv"
    provenance_path = output_dir / f"{filename_base}.provenance.yaml"

    df.write_csv(tsv_path, separator="\t", include_header=True)

    summary_counts = {}
    if df.height > 0:
        summary_dist = df.group_by(EXPRESSION_COLUMN).agg(pl.len()).sort(EXPRESSION_COLUMN)
        summary_counts = {
            row[EXPRESSION_COLUMN]: row["len"] for row in summary_dist.to_dicts()
        }

    metadata = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "species_id": species_id,
        "file_type": file_type,
        "output_files": [tsv_path.name],
        "statistics": {
            "total_rows": df.height,
            "expression_summary_counts": summary_counts,
        },
        "column_count": len(df.columns),
        "column_names": df.columns,
    }
    if provenance:
        metadata["run"] = provenance

    with open(provenance_path, "w") as f:
        yaml.dump(metadata, f, default_flow_style=False, sort_keys=False)

    return {
        "tsv": tsv_path,
        "provenance": provenance_path,
    }
