# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowsmith test suite.

This module provides foundational fixtures used across all test modules:
- A graph builder for trigger/action/condition/transform graphs
- Registries with the bundled integrations and with scripted fake actions
- Fast runtime settings (no retry delays)

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import threading
from typing import Any

import pytest

from flowsmith.core.config import RetryPolicy, RuntimeSettings
from flowsmith.core.credentials import StaticCredentialSource
from flowsmith.core.graph_schema import Graph
from flowsmith.core.registry import ActionDescriptor, ActionRegistry, ConfigField
from flowsmith.integrations import register_bundled


# =============================================================================
# Graph Fixtures
# =============================================================================


class GraphBuilder:
    """Fluent helper for building runtime-shaped graphs in tests.

    Example:
        graph = (
            GraphBuilder()
            .trigger("trigger-1")
            .action("send", "resend/send-email", emailTo="a@b.com")
            .edge("trigger-1", "send")
            .build()
        )
    """

    def __init__(self, name: str = "Test workflow"):
        self.name = name
        self.nodes: list[dict[str, Any]] = []
        self.edges: list[dict[str, Any]] = []

    def trigger(self, node_id: str = "trigger-1", label: str = "Trigger", **config) -> GraphBuilder:
        self.nodes.append({"id": node_id, "kind": "trigger", "label": label, "config": config})
        return self

    def action(
        self, node_id: str, action_type: str, label: str | None = None, join: str = "any", **config
    ) -> GraphBuilder:
        self.nodes.append(
            {
                "id": node_id,
                "kind": "action",
                "label": label or node_id,
                "join": join,
                "config": {"actionType": action_type, **config},
            }
        )
        return self

    def condition(
        self, node_id: str, expression: str, label: str | None = None, join: str = "any"
    ) -> GraphBuilder:
        self.nodes.append(
            {
                "id": node_id,
                "kind": "condition",
                "label": label or node_id,
                "join": join,
                "config": {"condition": expression},
            }
        )
        return self

    def transform(
        self, node_id: str, transform_type: str, label: str | None = None, join: str = "any", **config
    ) -> GraphBuilder:
        self.nodes.append(
            {
                "id": node_id,
                "kind": "transform",
                "label": label or node_id,
                "join": join,
                "config": {"transformType": transform_type, **config},
            }
        )
        return self

    def edge(self, source: str, target: str, branch: str | None = None) -> GraphBuilder:
        edge: dict[str, Any] = {"id": f"{source}->{target}", "source": source, "target": target}
        if branch is not None:
            edge["branch"] = branch
            edge["id"] = f"{source}->{target}:{branch}"
        self.edges.append(edge)
        return self

    def chain(self, *node_ids: str) -> GraphBuilder:
        for source, target in zip(node_ids, node_ids[1:]):
            self.edge(source, target)
        return self

    def data(self) -> dict[str, Any]:
        return {"name": self.name, "nodes": self.nodes, "edges": self.edges}

    def build(self) -> Graph:
        return Graph.model_validate(self.data())


@pytest.fixture
def graph_builder() -> type[GraphBuilder]:
    """The GraphBuilder class; call it to start a new graph."""
    return GraphBuilder


# =============================================================================
# Registry Fixtures
# =============================================================================


class FakeActions:
    """Registers scripted actions and records every call they receive.

    ``results`` is consumed one per call; the last result repeats.
    """

    def __init__(self, registry: ActionRegistry):
        self.registry = registry
        self.calls: list[tuple[str, dict[str, Any], dict[str, str]]] = []
        self._lock = threading.Lock()

    def add(
        self,
        slug: str,
        results: list[Any] | None = None,
        label: str | None = None,
        required: tuple[str, ...] = (),
        credential_keys: tuple[str, ...] = (),
        integration: str = "test",
    ) -> ActionDescriptor:
        scripted = list(results or [{"ok": True}])
        action_id = f"{integration}/{slug}"

        def execute(config, credentials):
            with self._lock:
                self.calls.append((action_id, dict(config), dict(credentials)))
                result = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            if isinstance(result, Exception):
                raise result
            return result

        descriptor = ActionDescriptor(
            integration=integration,
            slug=slug,
            label=label or slug.replace("-", " ").title(),
            execute=execute,
            category="Test",
            credential_keys=credential_keys,
            config_schema=tuple(ConfigField(name, required=True) for name in required),
        )
        self.registry.register(descriptor)
        return descriptor

    def calls_to(self, action_id: str) -> list[dict[str, Any]]:
        return [config for called, config, _ in self.calls if called == action_id]


@pytest.fixture
def registry() -> ActionRegistry:
    """A fresh registry with the bundled integrations registered."""
    return register_bundled(ActionRegistry())


@pytest.fixture
def fake_actions(registry: ActionRegistry) -> FakeActions:
    """Scripted test actions registered alongside the bundled ones."""
    return FakeActions(registry)


@pytest.fixture
def credentials() -> StaticCredentialSource:
    return StaticCredentialSource(
        {
            "resend": {"RESEND_API_KEY": "re_test", "RESEND_FROM_EMAIL": "bot@example.com"},
            "slack": {"SLACK_API_KEY": "xoxb-test"},
            "linear": {"LINEAR_API_KEY": "lin_test", "LINEAR_TEAM_ID": "team-1"},
            "test": {"TEST_TOKEN": "secret"},
        }
    )


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def fast_settings() -> RuntimeSettings:
    """Runtime settings with three attempts and no backoff delay."""
    return RuntimeSettings(
        retry=RetryPolicy(max_attempts=3, initial_delay=0.0, jitter=0.0),
        poll_interval=0.01,
    )
