"""Download file generation: header sets and TSV writing."""

from bgee_pipeline.output.writers import (
    COMPLETE_COLUMNS,
    HEADERS,
    SIMPLE_COLUMNS,
    build_download_frame,
    write_download_file,
)

__all__ = [
    "COMPLETE_COLUMNS",
    "HEADERS",
    "SIMPLE_COLUMNS",
    "build_download_frame",
    "write_download_file",
]
