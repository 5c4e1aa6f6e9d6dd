"""Domain registry for ordering domain migrations.

Provides:
- The fixed set of domains managed by one runner
- Each domain's declared dependencies (data, passed in at construction)
- Topological ordering based on those dependencies
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Optional

from .base import MigrationError

logger = logging.getLogger(__name__)


class DomainRegistry:
    """Registry of migration domains and their dependencies.

    A domain absent from the dependency table has no dependencies. The
    execution order is derived from the table alone, never from the order
    domains were listed in.
    """

    def __init__(
        self,
        domains: Iterable[str],
        dependencies: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        """Initialize the registry.

        Args:
            domains: Domain names
            dependencies: Domain -> domains it depends on

        Raises:
            MigrationError: If a domain is listed twice or dependencies are circular
        """
        self._domains: list[str] = []
        for domain in domains:
            if domain in self._domains:
                raise MigrationError(f"Duplicate domain: {domain}", domain=domain)
            self._domains.append(domain)

        dependencies = dependencies or {}
        self._dependencies: dict[str, tuple[str, ...]] = {
            d: tuple(dependencies.get(d, ())) for d in self._domains
        }
        self._sorted = self.sort(self._domains)

    @property
    def domains(self) -> list[str]:
        """Domains in registration order."""
        return list(self._domains)

    def __contains__(self, domain: object) -> bool:
        return domain in self._dependencies

    def __len__(self) -> int:
        return len(self._domains)

    def dependencies_of(self, domain: str) -> tuple[str, ...]:
        """Declared dependencies of a domain (empty for unknown domains)."""
        return self._dependencies.get(domain, ())

    def execution_order(self) -> list[str]:
        """All domains, dependencies first."""
        return list(self._sorted)

    def sort(self, domains: Iterable[str]) -> list[str]:
        """Sort a subset of domains so dependencies come first.

        Uses Kahn's algorithm; ties are broken alphabetically so the
        result does not depend on input order. Dependencies outside the
        subset are ignored.

        Args:
            domains: Domains to order

        Returns:
            Ordered list of domains

        Raises:
            MigrationError: If circular dependencies detected
        """
        subset = list(dict.fromkeys(domains))
        members = set(subset)

        in_degree: dict[str, int] = {d: 0 for d in subset}
        dependents: dict[str, list[str]] = {d: [] for d in subset}

        for domain in subset:
            for dep in self.dependencies_of(domain):
                if dep not in members:
                    if dep not in self._dependencies:
                        logger.warning(f"Domain {domain} depends on unknown domain {dep}")
                    continue
                in_degree[domain] += 1
                dependents[dep].append(domain)

        queue = sorted(d for d, n in in_degree.items() if n == 0)
        result: list[str] = []

        while queue:
            domain = queue.pop(0)
            result.append(domain)

            for dependent in dependents[domain]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
            queue.sort()

        if len(result) != len(subset):
            remaining = sorted(members - set(result))
            raise MigrationError(f"Circular dependency detected between domains: {remaining}")

        return result
