"""Dependency ordering of object types."""

import logging
from typing import Dict, List, Mapping, Set

from ..exceptions import CircularDependencyError
from ..models.schema import ObjectDescribe

logger = logging.getLogger(__name__)


class DependencyResolver:
    """
    Orders object types so referenced types are migrated before referencing ones.

    A type A depends on B when A has a reference field whose target is B and
    B is among the requested types. References to types outside the request
    and self references are ignored.
    """

    def dependencies(
        self,
        object_types: List[str],
        schema_by_type: Mapping[str, ObjectDescribe]
    ) -> Dict[str, List[str]]:
        """Get each requested type's dependencies within the requested set."""
        requested = set(object_types)
        graph: Dict[str, List[str]] = {}

        for object_type in object_types:
            schema = schema_by_type.get(object_type)
            deps: List[str] = []
            if schema:
                for ref_field in schema.reference_fields():
                    for referenced in ref_field.reference_to:
                        if referenced in requested and referenced != object_type and referenced not in deps:
                            deps.append(referenced)
            graph[object_type] = deps

        return graph

    def order(
        self,
        object_types: List[str],
        schema_by_type: Mapping[str, ObjectDescribe]
    ) -> List[str]:
        """
        Topologically sort object types.

        Independent types keep their input order.

        Raises:
            CircularDependencyError: If the requested types reference each other in a cycle
        """
        graph = self.dependencies(object_types, schema_by_type)
        ordered: List[str] = []
        visited: Set[str] = set()
        visiting: Set[str] = set()

        def visit(object_type: str) -> None:
            if object_type in visited:
                return
            if object_type in visiting:
                raise CircularDependencyError(object_type)

            visiting.add(object_type)
            for dependency in graph.get(object_type, []):
                visit(dependency)
            visiting.discard(object_type)

            visited.add(object_type)
            ordered.append(object_type)

        for object_type in object_types:
            visit(object_type)

        logger.info(f"Migration order: {' -> '.join(ordered)}")
        return ordered
