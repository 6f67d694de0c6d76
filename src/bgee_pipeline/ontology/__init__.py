"""Ontology relation closures consumed by the call pipeline."""

from bgee_pipeline.ontology.relations import RelationIndex, SpeciesRelations

__all__ = ["RelationIndex", "SpeciesRelations"]
