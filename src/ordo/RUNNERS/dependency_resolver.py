"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, Iterable, List, Mapping, Set

from ..errors import CycleError, SpecError
from ..MODELS.service_spec import ServiceSpec


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.

    Services are grouped into levels: every service sits in a later level
    than all of its dependencies, and services of one level may start
    concurrently. Order inside a level follows declaration order.
    """
    def resolve_levels(self, services: Mapping[str, ServiceSpec]) -> List[List[str]]:
        """
        Groups services into start levels.

        :param services: Services in declaration order.
        :return: Levels of service names, first level first.
        :raises SpecError: If a service depends on an undeclared service.
        :raises CycleError: If the dependencies contain a cycle.
        """
        self.check_acyclic(services)

        level_of: Dict[str, int] = {}

        def depth(name: str) -> int:
            if name not in level_of:
                deps = services[name].depends_on
                level_of[name] = 1 + max((depth(dep) for dep in deps), default=-1)
            return level_of[name]

        levels: List[List[str]] = []
        for name in services:
            index = depth(name)
            while len(levels) <= index:
                levels.append([])
        # Fill in declaration order to keep levels deterministic
        for name in services:
            levels[level_of[name]].append(name)
        return levels

    def resolve_order(self, services: Mapping[str, ServiceSpec]) -> List[str]:
        """
        Flattens the start levels into a single start order.
        """
        return [name for level in self.resolve_levels(services) for name in level]

    def stop_levels(self, services: Mapping[str, ServiceSpec]) -> List[List[str]]:
        """
        Levels in shutdown order: dependents before their dependencies.
        """
        return list(reversed(self.resolve_levels(services)))

    def check_acyclic(self, services: Mapping[str, ServiceSpec]) -> None:
        """
        Depth-first traversal that reports the first cycle found.

        :raises CycleError: With the services on the cycle, in dependency order.
        """
        visited: Set[str] = set()
        stack: List[str] = []
        on_stack: Set[str] = set()

        def visit(name: str):
            """
            Recursive function for topological sort.
            """
            if name in on_stack:
                start = stack.index(name)
                raise CycleError(stack[start:] + [name])
            if name in visited:
                return
            stack.append(name)
            on_stack.add(name)
            for dep in services[name].depends_on:
                if dep not in services:
                    raise SpecError(f"Unknown service '{dep}'", field=f"services.{name}.depends_on")
                visit(dep)
            stack.pop()
            on_stack.discard(name)
            visited.add(name)

        for name in services:
            visit(name)

    def dependents(self, services: Mapping[str, ServiceSpec], name: str) -> List[str]:
        """
        All services that depend on ``name``, directly or transitively.

        :return: Names in declaration order.
        """
        found: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for other, svc in services.items():
                if current in svc.depends_on and other not in found:
                    found.add(other)
                    frontier.append(other)
        return [other for other in services if other in found]

    def subset(self,
               services: Mapping[str, ServiceSpec],
               names: Iterable[str]) -> Dict[str, ServiceSpec]:
        """
        Restricts services to ``names`` plus everything they depend on.

        :raises SpecError: If a requested service is not declared.
        """
        wanted: Set[str] = set()
        frontier = list(names)
        while frontier:
            current = frontier.pop()
            if current not in services:
                raise SpecError(f"No such service: {current}")
            if current in wanted:
                continue
            wanted.add(current)
            frontier.extend(services[current].depends_on)
        return {name: svc for name, svc in services.items() if name in wanted}
