"""
Exception types raised by devorch components.
"""
from typing import List, Optional


class DevorchError(Exception):
    """Base class for all devorch errors."""


class CatalogError(DevorchError, ValueError):
    """
    Raised when a set of service definitions cannot form a valid catalog,
    e.g. duplicate names or dependencies on undefined services.
    """


class CycleError(DevorchError):
    """
    Raised when the dependency graph contains a cycle.

    The ``cycle`` attribute holds the full path, starting and ending with the
    same service, e.g. ``['a', 'b', 'c', 'a']``.
    """

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ResourceAdviceUnavailable(DevorchError):
    """Raised when host metrics cannot be read."""


class CollaboratorError(DevorchError):
    """
    Raised by a builder or runtime adapter when the underlying tool reports
    failure.

    :param message: Short description of the failure.
    :param output: Captured output of the failed command, if any.
    """

    def __init__(self, message: str, output: Optional[str] = None):
        super().__init__(message)
        self.output = output or ""


class UnitTimeoutError(CollaboratorError):
    """Raised by an adapter when a command exceeded its allotted time."""
