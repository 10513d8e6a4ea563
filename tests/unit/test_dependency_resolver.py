import random
import pytest
from conftest import make_service
from ordo.errors import CycleError, SpecError
from ordo.RUNNERS.dependency_resolver import DependencyResolver

def services_of(*specs):
    return {spec.name: spec for spec in specs}

class TestDependencyResolver:
    """Tests for start order and level grouping."""

    def test_chain(self):
        services = services_of(
            make_service("web", ["api"]),
            make_service("api", ["db"]),
            make_service("db"),
        )
        resolver = DependencyResolver()
        assert resolver.resolve_levels(services) == [["db"], ["api"], ["web"]]
        assert resolver.resolve_order(services) == ["db", "api", "web"]
        assert resolver.stop_levels(services) == [["web"], ["api"], ["db"]]

    def test_levels_follow_declaration_order(self):
        services = services_of(
            make_service("worker", ["queue", "db"]),
            make_service("queue"),
            make_service("web", ["db"]),
            make_service("db"),
        )
        levels = DependencyResolver().resolve_levels(services)
        assert levels == [["queue", "db"], ["worker", "web"]]

    def test_diamond(self):
        services = services_of(
            make_service("a"),
            make_service("b", ["a"]),
            make_service("c", ["a"]),
            make_service("d", ["b", "c"]),
        )
        assert DependencyResolver().resolve_levels(services) == [["a"], ["b", "c"], ["d"]]

    def test_cycle(self):
        services = services_of(
            make_service("a", ["c"]),
            make_service("b", ["a"]),
            make_service("c", ["b"]),
            make_service("d"),
        )
        with pytest.raises(CycleError) as excinfo:
            DependencyResolver().resolve_levels(services)
        assert excinfo.value.cycle == ["a", "c", "b", "a"]
        assert excinfo.value.exit_code == 3

    def test_unknown_dependency(self):
        with pytest.raises(SpecError, match="ghost"):
            DependencyResolver().resolve_levels(services_of(make_service("a", ["ghost"])))

    def test_dependents(self):
        services = services_of(
            make_service("db"),
            make_service("cache"),
            make_service("api", ["db"]),
            make_service("web", ["api", "cache"]),
        )
        resolver = DependencyResolver()
        assert resolver.dependents(services, "db") == ["api", "web"]
        assert resolver.dependents(services, "cache") == ["web"]
        assert resolver.dependents(services, "web") == []

    def test_subset(self):
        services = services_of(
            make_service("db"),
            make_service("cache"),
            make_service("api", ["db"]),
            make_service("web", ["api", "cache"]),
        )
        resolver = DependencyResolver()
        assert list(resolver.subset(services, ["api"])) == ["db", "api"]
        assert list(resolver.subset(services, ["web"])) == ["db", "cache", "api", "web"]
        with pytest.raises(SpecError, match="No such service"):
            resolver.subset(services, ["nope"])

    def test_random_graphs_respect_dependencies(self):
        rng = random.Random(1234)
        resolver = DependencyResolver()
        for _ in range(50):
            names = [f"s{i}" for i in range(rng.randint(1, 15))]
            specs = []
            for index, name in enumerate(names):
                # Only depend on earlier names, so the graph stays acyclic
                deps = rng.sample(names[:index], k=rng.randint(0, min(index, 3)))
                specs.append(make_service(name, deps))
            rng.shuffle(specs)
            services = services_of(*specs)

            levels = resolver.resolve_levels(services)
            level_of = {name: i for i, level in enumerate(levels) for name in level}
            assert sorted(level_of) == sorted(names)
            for spec in specs:
                for dep in spec.depends_on:
                    assert level_of[dep] < level_of[spec.name]
            declared = list(services)
            for level in levels:
                assert level == sorted(level, key=declared.index)
