"""Reflexive-transitive is_a/part_of closures for anatomy and developmental stages."""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RelationIndex:
    """Closure of the is_a/part_of relations of one ontology for a set of species.

    Both maps are reflexive: every known term maps at least to itself.

    Attributes:
        name: Ontology name ("anatomical entity", "stage")
        children_of_ancestor: ancestor ID -> IDs of its descendants, including itself
        ancestors_of_child: child ID -> IDs of its ancestors, including itself
    """

    name: str
    children_of_ancestor: dict[str, set[str]] = field(default_factory=dict)
    ancestors_of_child: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def from_edges(
        cls,
        name: str,
        edges: Iterable[tuple[str, str]],
        terms: Iterable[str] = (),
    ) -> "RelationIndex":
        """
        Build the closures from direct (child, parent) edges.

        Edges may already include indirect or reflexive relations; the
        closure is computed by breadth-first traversal either way.

        Args:
            name: Ontology name
            edges: (child_id, parent_id) pairs
            terms: Additional term IDs without any relation (get a reflexive entry)

        Returns:
            RelationIndex with consistent, mutually inverse maps
        """
        parents_index: dict[str, set[str]] = {}
        for child_id, parent_id in edges:
            parents_index.setdefault(child_id, set()).add(parent_id)
            parents_index.setdefault(parent_id, set())
        for term_id in terms:
            parents_index.setdefault(term_id, set())

        ancestors_of_child: dict[str, set[str]] = {}
        for term_id in parents_index:
            ancestors: set[str] = set()
            queue: deque[str] = deque([term_id])
            while queue:
                current = queue.popleft()
                if current in ancestors:
                    continue
                ancestors.add(current)
                for parent_id in parents_index[current]:
                    if parent_id not in ancestors:
                        queue.append(parent_id)
            ancestors_of_child[term_id] = ancestors

        children_of_ancestor: dict[str, set[str]] = {term_id: set() for term_id in parents_index}
        for child_id, ancestors in ancestors_of_child.items():
            for ancestor_id in ancestors:
                children_of_ancestor[ancestor_id].add(child_id)

        logger.debug("relation_index_built", ontology=name, term_count=len(parents_index))

        return cls(
            name=name,
            children_of_ancestor=children_of_ancestor,
            ancestors_of_child=ancestors_of_child,
        )


@dataclass
class SpeciesRelations:
    """Anatomical entity and developmental stage closures for one or more species."""

    anat_entities: RelationIndex
    stages: RelationIndex
