"""
Dependency resolution for services to determine build, startup and shutdown order.
"""
from typing import Iterable, List, Optional, Set
from ..MODELS.service_catalog import ServiceCatalog
from ..errors import CycleError


class GraphResolver:
    """
    Resolves the order in which services may be built or started.

    Resolution is a depth-first topological sort. Free nodes are visited by
    descending priority, then by name, so the same catalog always yields the
    same order.
    """
    def resolve_order(self, catalog: ServiceCatalog,
                      names: Optional[Iterable[str]] = None) -> List[str]:
        """
        Determines the order to build or start services.

        :param catalog: The service catalog.
        :param names: Restrict the result to these services. Dependencies
                      outside the selection are ignored.
        :return: Service names, every dependency before its dependents.
        :raises CycleError: If a dependency cycle is detected.
        """
        selected = set(catalog.names()) if names is None else set(catalog.validate_names(names))
        dependencies = catalog.dependency_map(selected)

        def key(name):
            return catalog.services[name].sort_key()

        ordered: List[str] = []
        visited: Set[str] = set()
        visiting: Set[str] = set()
        path: List[str] = []

        def visit(name: str):
            """
            Recursive function for topological sort.
            """
            if name in visiting:
                raise CycleError(path[path.index(name):] + [name])
            if name in visited:
                return
            visiting.add(name)
            path.append(name)
            for dep in sorted(dependencies[name], key=key):
                visit(dep)
            path.pop()
            visiting.remove(name)
            visited.add(name)
            ordered.append(name)

        for name in sorted(selected, key=key):
            visit(name)

        return ordered

    def reverse_order(self, catalog: ServiceCatalog,
                      names: Optional[Iterable[str]] = None) -> List[str]:
        """
        Determines the order to stop services: dependents before dependencies.
        """
        return list(reversed(self.resolve_order(catalog, names)))
