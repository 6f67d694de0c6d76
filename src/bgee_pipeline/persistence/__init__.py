"""Persistence layer for calls, ontologies and provenance tracking."""

from bgee_pipeline.persistence.duckdb_store import CallStore
from bgee_pipeline.persistence.provenance import ProvenanceTracker

__all__ = ["CallStore", "ProvenanceTracker"]
