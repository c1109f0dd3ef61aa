"""Package dependency graph — validation and deterministic build order.

Every package must come after all of its declared dependencies. Among
packages that are ready at the same time, the one declared first wins, so
the order (and therefore the manifest) is reproducible.
"""

from __future__ import annotations

import heapq

from relforge.core.errors import ReleaseError
from relforge.models.artifacts import PackageSpec


class UnresolvedDependencyError(ReleaseError):
    """Raised when a package or job names a package the release does not have."""


class CyclicDependencyError(ReleaseError):
    """Raised when package dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class DependencyGraph:
    """Directed acyclic graph of package -> dependency edges.

    Built from the release's package specs; validation happens in the
    constructor, so an instance always describes a resolvable graph.
    """

    def __init__(self, packages: list[PackageSpec]) -> None:
        self._packages: dict[str, PackageSpec] = {}
        self._declared: dict[str, int] = {}
        for position, spec in enumerate(packages):
            if spec.name in self._packages:
                raise UnresolvedDependencyError(f"Package '{spec.name}' is declared twice")
            self._packages[spec.name] = spec
            self._declared[spec.name] = position

        # Forward edges: package -> its direct dependencies (deduplicated)
        self._dependencies: dict[str, list[str]] = {
            name: list(dict.fromkeys(spec.dependencies))
            for name, spec in self._packages.items()
        }
        # Reverse edges: package -> packages that depend on it
        self._dependents: dict[str, list[str]] = {name: [] for name in self._packages}

        for name, deps in self._dependencies.items():
            for dep in deps:
                if dep not in self._packages:
                    raise UnresolvedDependencyError(
                        f"Package '{name}' depends on unknown package '{dep}'"
                    )
                self._dependents[dep].append(name)

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm with declaration order as the tie-breaker."""
        in_degree = {name: len(deps) for name, deps in self._dependencies.items()}
        ready = [(self._declared[n], n) for n, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        order: list[str] = []

        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (self._declared[dependent], dependent))

        if len(order) != len(self._packages):
            remaining = [n for n in self._packages if n not in set(order)]
            raise CyclicDependencyError(self._find_cycle(remaining))
        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        """Walk dependency edges among *candidates* until a node repeats."""
        remaining = set(candidates)
        path: list[str] = []
        seen: dict[str, int] = {}
        node = candidates[0]
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = next(d for d in self._dependencies[node] if d in remaining)
        return path[seen[node]:] + [node]

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def resolve(self) -> list[PackageSpec]:
        """Return package specs with every package after its dependencies."""
        return [self._packages[name] for name in self._order]

    @property
    def package_names(self) -> list[str]:
        """Package names in build order."""
        return list(self._order)

    def get_dependencies(self, name: str) -> list[str]:
        """Direct dependencies of *name*, in declaration order."""
        return list(self._dependencies[name])

    def check_references(self, owner: str, names: list[str]) -> None:
        """Raise if any of *names* is not a package in this graph."""
        missing = [n for n in names if n not in self._packages]
        if missing:
            raise UnresolvedDependencyError(
                f"{owner} references unknown package(s): {', '.join(missing)}"
            )
