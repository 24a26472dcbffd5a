"""
Models for the catalog of services making up a development stack.
"""
from typing import Dict, Iterable, List, Optional, Set
from pydantic import BaseModel, ConfigDict, model_validator
from .service_definition import ServiceDefinition
from ..errors import CatalogError


class ServiceCatalog(BaseModel):
    """
    Complete table of service definitions for a stack.
    Equivalent to the services section of a parsed compose file.
    """
    model_config = ConfigDict(frozen=True)

    services: Dict[str, ServiceDefinition] = {}

    @model_validator(mode="after")
    def _check_references(self) -> "ServiceCatalog":
        for key, svc in self.services.items():
            if key != svc.name:
                raise ValueError(f"Catalog key {key} does not match service name {svc.name}")
            unknown = sorted(svc.dependencies - self.services.keys())
            if unknown:
                raise ValueError(
                    f"Service {svc.name} depends on undefined service(s): {', '.join(unknown)}"
                )
        return self

    @classmethod
    def from_definitions(cls, definitions: Iterable[ServiceDefinition]) -> "ServiceCatalog":
        """
        Builds a catalog from a list of definitions.

        :param definitions: Service definitions, names must be unique.
        :return: The validated catalog.
        :raises CatalogError: On duplicate names or undefined dependencies.
        """
        services: Dict[str, ServiceDefinition] = {}
        for svc in definitions:
            if svc.name in services:
                raise CatalogError(f"Duplicate service definition: {svc.name}")
            services[svc.name] = svc
        try:
            return cls(services=services)
        except ValueError as e:
            raise CatalogError(str(e)) from e

    def __contains__(self, name: object) -> bool:
        return name in self.services

    def __len__(self) -> int:
        return len(self.services)

    def names(self) -> List[str]:
        return list(self.services)

    def get(self, name: str) -> ServiceDefinition:
        """
        :raises CatalogError: If the service is not defined.
        """
        try:
            return self.services[name]
        except KeyError:
            raise CatalogError(f"Unknown service: {name}") from None

    def definitions(self) -> List[ServiceDefinition]:
        return list(self.services.values())

    def validate_names(self, names: Iterable[str]) -> List[str]:
        """Returns the names unchanged, raising CatalogError for unknown ones."""
        names = list(names)
        unknown = [n for n in names if n not in self.services]
        if unknown:
            raise CatalogError(f"Unknown service(s): {', '.join(unknown)}")
        return names

    def dependency_map(self, names: Optional[Iterable[str]] = None) -> Dict[str, Set[str]]:
        """
        Maps each selected service to its dependencies, restricted to the
        selection.
        """
        selected = set(self.services) if names is None else set(names)
        return {
            name: set(self.services[name].dependencies) & selected
            for name in self.services
            if name in selected
        }

    def dependents_map(self, names: Optional[Iterable[str]] = None) -> Dict[str, Set[str]]:
        """
        Maps each selected service to the selected services depending on it.
        """
        deps = self.dependency_map(names)
        dependents: Dict[str, Set[str]] = {name: set() for name in deps}
        for name, requires in deps.items():
            for dep in requires:
                dependents[dep].add(name)
        return dependents

    def with_dependencies(self, names: Iterable[str]) -> Set[str]:
        """
        Returns the selection extended by all transitive dependencies.
        """
        pending = list(self.validate_names(names))
        closure: Set[str] = set()
        while pending:
            name = pending.pop()
            if name in closure:
                continue
            closure.add(name)
            pending.extend(self.services[name].dependencies)
        return closure
