"""Tests for domain ordering."""

import itertools

import pytest

from deployer.db.migrations.base import MigrationError
from deployer.db.migrations.registry import DomainRegistry


class TestDomainRegistry:
    """Tests for DomainRegistry."""

    def test_execution_order(self, registry):
        assert registry.execution_order() == ["content", "services"]

    @pytest.mark.parametrize("domains", [["content", "services"], ["services", "content"]])
    def test_sort_ignores_input_order(self, registry, domains):
        """Test dependencies always come first whatever the input order."""
        assert registry.sort(domains) == ["content", "services"]

    def test_registration_order_does_not_matter(self):
        registry = DomainRegistry(["services", "content"], {"services": ["content"]})
        assert registry.execution_order() == ["content", "services"]
        assert registry.domains == ["services", "content"]

    def test_ties_broken_alphabetically(self):
        registry = DomainRegistry(["services", "identity", "content"], {"services": ["content"]})
        assert registry.execution_order() == ["content", "identity", "services"]

    def test_diamond(self):
        deps = {"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]}
        for domains in itertools.permutations(deps):
            registry = DomainRegistry(domains, deps)
            assert registry.execution_order() == ["a", "b", "c", "d"]

    def test_dependency_outside_subset_ignored(self, registry):
        assert registry.sort(["services"]) == ["services"]

    def test_unknown_dependency_ignored(self):
        registry = DomainRegistry(["services"], {"services": ["content"]})
        assert registry.execution_order() == ["services"]

    def test_circular_dependency(self):
        with pytest.raises(MigrationError, match="Circular dependency"):
            DomainRegistry(["a", "b"], {"a": ["b"], "b": ["a"]})

    def test_duplicate_domain(self):
        with pytest.raises(MigrationError, match="Duplicate domain: content"):
            DomainRegistry(["content", "content"])

    def test_dependencies_of(self, registry):
        assert registry.dependencies_of("services") == ("content",)
        assert registry.dependencies_of("content") == ()
        assert registry.dependencies_of("billing") == ()

    def test_membership(self, registry):
        assert "content" in registry
        assert "billing" not in registry
        assert len(registry) == 2
