"""Bundled integrations.

Each module exposes an ``INTEGRATION`` describing its actions. Nothing is
registered on import; call :func:`register_bundled` (or
:func:`flowsmith.core.registry.init_registry`) at startup.
"""

from flowsmith.core.registry import ActionRegistry, Integration
from flowsmith.integrations import http, linear, resend, slack

BUNDLED_INTEGRATIONS: tuple[Integration, ...] = (
    http.INTEGRATION,
    resend.INTEGRATION,
    slack.INTEGRATION,
    linear.INTEGRATION,
)


def register_bundled(registry: ActionRegistry) -> ActionRegistry:
    for integration in BUNDLED_INTEGRATIONS:
        registry.register_integration(integration)
    return registry
