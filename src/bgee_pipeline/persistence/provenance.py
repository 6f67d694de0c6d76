"""Provenance tracking for call pipeline runs."""

import json
from datetime import datetime, timezone
from typing import Optional


class ProvenanceTracker:
    """
    Tracks provenance metadata for call pipeline runs.

    Besides the generic step log, keeps the species requested in the
    config (empty means all species), the species actually processed and
    their counts per step, so that global calls and download files can be
    traced back to the run that produced them.
    """

    def __init__(self, pipeline_version: str, config: "PipelineConfig"):
        """
        Initialize provenance tracker.

        Args:
            pipeline_version: Pipeline version string (e.g., "0.1.0")
            config: PipelineConfig instance
        """
        self.pipeline_version = pipeline_version
        self.config_hash = config.config_hash()
        self.requested_species_ids = list(config.species_ids)
        # species ID -> step name -> counts
        self.species_counts: dict[str, dict[str, dict[str, int]]] = {}
        self.processing_steps = []
        self.created_at = datetime.now(timezone.utc)

    @property
    def processed_species_ids(self) -> list[str]:
        """Species with at least one recorded step, in processing order."""
        return list(self.species_counts)

    def record_step(self, step_name: str, details: Optional[dict] = None) -> None:
        """
        Record a processing step.

        Args:
            step_name: Name of the processing step
            details: Optional dictionary of additional details
        """
        step = {
            "step_name": step_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if details:
            step["details"] = details
        self.processing_steps.append(step)

    def record_species_step(self, step_name: str, species_id: str, counts: dict[str, int]) -> None:
        """
        Record the counts of one species for a step.

        Counts of repeated steps for the same species are merged, so that
        one species can report several download files under one step.
        """
        step_counts = self.species_counts.setdefault(species_id, {}).setdefault(step_name, {})
        step_counts.update(counts)
        self.record_step(step_name, {"species_id": species_id, **counts})

    def get_steps(self) -> list[dict]:
        return self.processing_steps

    def create_metadata(self) -> dict:
        """
        Create full provenance metadata dictionary.

        Returns:
            Dictionary with all provenance information
        """
        return {
            "pipeline_version": self.pipeline_version,
            "config_hash": self.config_hash,
            "requested_species_ids": self.requested_species_ids,
            "processed_species_ids": self.processed_species_ids,
            "species_counts": self.species_counts,
            "created_at": self.created_at.isoformat(),
            "processing_steps": self.processing_steps,
        }

    def save_to_store(self, store: "CallStore") -> None:
        """
        Save provenance metadata to the call store, one row per run.

        Args:
            store: CallStore instance
        """
        metadata = self.create_metadata()

        store.conn.execute("""
            CREATE TABLE IF NOT EXISTS _provenance (
                version VARCHAR,
                config_hash VARCHAR,
                created_at TIMESTAMP,
                species_ids VARCHAR[],
                species_counts_json VARCHAR,
                steps_json VARCHAR
            )
        """)

        store.conn.execute("""
            INSERT INTO _provenance (version, config_hash, created_at, species_ids, species_counts_json, steps_json)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [
            metadata["pipeline_version"],
            metadata["config_hash"],
            metadata["created_at"],
            metadata["processed_species_ids"],
            json.dumps(metadata["species_counts"]),
            json.dumps(metadata["processing_steps"], default=str),
        ])

    @classmethod
    def from_config(
        cls,
        config: "PipelineConfig",
        version: Optional[str] = None
    ) -> "ProvenanceTracker":
        """
        Create ProvenanceTracker from a PipelineConfig.

        Args:
            config: PipelineConfig instance
            version: Pipeline version string. If None, uses bgee_pipeline.__version__

        Returns:
            ProvenanceTracker instance
        """
        if version is None:
            from bgee_pipeline import __version__
            version = __version__

        return cls(version, config)
