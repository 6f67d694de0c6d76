"""Pydantic models for pipeline configuration."""

import hashlib
import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

EXPR_SIMPLE = "expr-simple"
EXPR_COMPLETE = "expr-complete"
DIFFEXPR_SIMPLE = "diffexpr-simple"
DIFFEXPR_COMPLETE = "diffexpr-complete"

FILE_TYPES = (EXPR_SIMPLE, EXPR_COMPLETE, DIFFEXPR_SIMPLE, DIFFEXPR_COMPLETE)


class PropagationConfig(BaseModel):
    """Options of global call generation."""

    restrict_no_expression_to_allowed: bool = Field(
        default=True,
        description=(
            "Only propagate no-expression calls to anatomical entities with calls "
            "or ancestors of such entities"
        ),
    )


class DownloadFileConfig(BaseModel):
    """Options of download file generation."""

    file_types: list[str] = Field(
        default=[EXPR_SIMPLE, EXPR_COMPLETE],
        description="Download file types to generate",
    )
    filter_non_informative: bool = Field(
        default=True,
        description="Drop no-expression calls in non-informative anatomical entities",
    )

    @field_validator("file_types")
    @classmethod
    def check_file_types(cls, v: list[str]) -> list[str]:
        """Reject unknown file types (unsupported ones are rejected at generation time)."""
        unknown = [file_type for file_type in v if file_type not in FILE_TYPES]
        if unknown:
            raise ValueError(f"Unknown file types {unknown}, expected values among {list(FILE_TYPES)}")
        return v


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""

    duckdb_path: Path = Field(
        ...,
        description="Path to DuckDB database file holding calls and ontologies",
    )
    output_dir: Path = Field(
        ...,
        description="Directory for generated download files",
    )
    species_ids: list[str] = Field(
        default_factory=list,
        description="Species to process (empty = all species in the store)",
    )
    propagation: PropagationConfig = Field(
        default_factory=PropagationConfig,
        description="Global call generation options",
    )
    download_files: DownloadFileConfig = Field(
        default_factory=DownloadFileConfig,
        description="Download file generation options",
    )

    @field_validator("output_dir")
    @classmethod
    def create_directory(cls, v: Path) -> Path:
        """Create directory if it doesn't exist."""
        v.mkdir(parents=True, exist_ok=True)
        return v

    def config_hash(self) -> str:
        """
        Compute SHA-256 hash of the configuration.

        Returns a deterministic hash based on all config values,
        recorded in provenance metadata of generated files.
        """
        config_dict = self.model_dump(mode="python")
        config_json = json.dumps(
            config_dict,
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(config_json.encode()).hexdigest()
