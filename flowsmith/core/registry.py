"""Action registry.

Maps action ids (``integration/slug``) to descriptors that know how to
execute the action and how to emit it as standalone source. Legacy graphs
refer to actions by their old display labels ("Send Email"); those are
resolved through an alias table, then by exact label match.

The registry is populated once at startup (:func:`init_registry`) and only
read afterwards. Registration swaps in a new mapping instead of mutating the
live one, so lookups never need a lock.
"""

import inspect
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

logger = logging.getLogger(__name__)

# Legacy label -> canonical action id. Values may themselves be aliases.
LEGACY_ACTION_MAPPINGS: dict[str, str] = {
    "Send Email": "resend/send-email",
    "Send Slack Message": "slack/send-message",
    "Create Ticket": "linear/create-ticket",
    "Find Issues": "linear/find-issues",
    "HTTP Request": "http/request",
}


class RegistryError(Exception):
    """Registration bug: malformed id or a non-terminating alias chain."""

    pass


class ActionError(Exception):
    """An action (or transform) failed after its retry budget."""

    def __init__(self, action_id: str, message: str, attempts: int = 1):
        self.action_id = action_id
        self.attempts = attempts
        super().__init__(message)


@dataclass(frozen=True)
class ConfigField:
    """One field of an action's configuration form."""

    name: str
    required: bool = False
    type: str = "string"
    label: str | None = None
    example: str | None = None


@dataclass(frozen=True)
class EnvVar:
    """Environment variable a compiled workflow needs."""

    name: str
    description: str = ""


@dataclass
class ActionResult:
    """Normalized outcome of one action invocation."""

    ok: bool
    fields: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ActionResult":
        """Build from an action's return value.

        Accepts ``{"ok": True, ...fields}``, ``{"ok": False, "error": ...}`` and
        the older ``success`` key in place of ``ok``.
        """
        if not isinstance(payload, Mapping):
            return cls.failure(f"Action returned {type(payload).__name__}, expected a mapping")

        if "ok" in payload:
            ok = payload["ok"]
        elif "success" in payload:
            ok = payload["success"]
        else:
            return cls.failure("Action result has no 'ok' flag")

        if not isinstance(ok, bool):
            return cls.failure(f"Action result flag must be a boolean, got {ok!r}")

        if not ok:
            error = payload.get("error") or "Action failed without an error message"
            return cls.failure(str(error))

        fields = {k: v for k, v in payload.items() if k not in ("ok", "success")}
        return cls(ok=True, fields=fields)

    @classmethod
    def failure(cls, error: str) -> "ActionResult":
        return cls(ok=False, error=error)


def compute_action_id(integration: str, slug: str) -> str:
    return f"{integration}/{slug}"


def parse_action_id(action_id: str) -> tuple[str, str]:
    """Split ``integration/slug``.

    Raises:
        RegistryError: If the id is not namespaced
    """
    integration, sep, slug = action_id.partition("/")
    if not sep or not integration or not slug or "/" in slug:
        raise RegistryError(f"Malformed action id '{action_id}' (expected 'integration/slug')")
    return integration, slug


@dataclass(frozen=True)
class ActionDescriptor:
    """Everything the engine and compiler need to know about an action.

    ``execute`` must be a self-contained module-level function: its source is
    what the compiler emits, so it may only use names listed in
    ``source_imports``.
    """

    integration: str
    slug: str
    label: str
    execute: Callable[[dict[str, Any], dict[str, str]], Any]
    description: str = ""
    category: str = ""
    config_schema: tuple[ConfigField, ...] = ()
    credential_keys: tuple[str, ...] = ()
    source_template: str = ""
    function_name: str = ""
    source_imports: tuple[str, ...] = ()
    dependencies: Mapping[str, str] = field(default_factory=dict)
    env_vars: tuple[EnvVar, ...] = ()

    def __post_init__(self):
        parse_action_id(self.action_id)
        if not self.function_name:
            object.__setattr__(self, "function_name", self.execute.__name__)
        if not self.source_template:
            try:
                source = inspect.getsource(self.execute)
            except (OSError, TypeError):
                source = ""
            object.__setattr__(self, "source_template", source)

    @property
    def action_id(self) -> str:
        return compute_action_id(self.integration, self.slug)

    def required_fields(self) -> list[str]:
        return [f.name for f in self.config_schema if f.required]

    def missing_fields(self, config: Mapping[str, Any]) -> list[str]:
        """Required fields that are absent or blank in ``config``."""
        missing = []
        for name in self.required_fields():
            value = config.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing


@dataclass(frozen=True)
class Integration:
    """A group of actions sharing credentials and dependencies."""

    type: str
    label: str
    actions: tuple[ActionDescriptor, ...]
    description: str = ""
    credential_keys: tuple[str, ...] = ()
    dependencies: Mapping[str, str] = field(default_factory=dict)
    env_vars: tuple[EnvVar, ...] = ()


class ActionRegistry:
    """Id-keyed store of :class:`ActionDescriptor` objects."""

    def __init__(self, aliases: Mapping[str, str] | None = None):
        self._actions: dict[str, ActionDescriptor] = {}
        self._aliases: dict[str, str] = dict(LEGACY_ACTION_MAPPINGS if aliases is None else aliases)
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: str) -> bool:
        return self.resolve(action_id) is not None

    # ========== Registration ==========

    def register(self, descriptor: ActionDescriptor) -> None:
        """Register a descriptor. Re-registering an id replaces the old entry."""
        with self._write_lock:
            if descriptor.action_id in self._actions:
                logger.debug(f"Replacing registered action '{descriptor.action_id}'")
            self._actions = {**self._actions, descriptor.action_id: descriptor}

    def register_integration(self, integration: Integration) -> None:
        """Register every action of an integration, merging its shared metadata."""
        for action in integration.actions:
            if action.integration != integration.type:
                raise RegistryError(
                    f"Action '{action.action_id}' does not belong to integration "
                    f"'{integration.type}'"
                )
            self.register(
                replace(
                    action,
                    credential_keys=tuple(
                        dict.fromkeys(integration.credential_keys + action.credential_keys)
                    ),
                    dependencies={**integration.dependencies, **action.dependencies},
                    env_vars=_merge_env_vars(integration.env_vars, action.env_vars),
                )
            )
        logger.debug(f"Registered integration '{integration.type}' ({len(integration.actions)} actions)")

    def register_alias(self, legacy_id: str, target_id: str) -> None:
        with self._write_lock:
            self._aliases = {**self._aliases, legacy_id: target_id}

    # ========== Lookup ==========

    def get(self, action_id: str) -> ActionDescriptor | None:
        """Exact canonical-id lookup."""
        return self._actions.get(action_id)

    def resolve(self, action_id: str | None) -> ActionDescriptor | None:
        """Find a descriptor by canonical id, legacy alias, or display label.

        Raises:
            RegistryError: If the alias chain for ``action_id`` does not terminate
        """
        if not action_id:
            return None

        actions = self._actions
        if action_id in actions:
            return actions[action_id]

        if action_id in self._aliases:
            target = self._follow_aliases(action_id)
            if target in actions:
                return actions[target]

        for descriptor in actions.values():
            if descriptor.label == action_id:
                return descriptor
        return None

    def _follow_aliases(self, action_id: str) -> str:
        aliases = self._aliases
        current = action_id
        hops = 0
        while current in aliases:
            current = aliases[current]
            hops += 1
            if hops > len(aliases):
                raise RegistryError(f"Alias chain for '{action_id}' does not terminate")
        return current

    def actions(self) -> list[ActionDescriptor]:
        return sorted(self._actions.values(), key=lambda d: d.action_id)

    def actions_by_category(self) -> dict[str, list[ActionDescriptor]]:
        grouped: dict[str, list[ActionDescriptor]] = {}
        for descriptor in self.actions():
            grouped.setdefault(descriptor.category or descriptor.integration, []).append(descriptor)
        return grouped

    def dependencies_for(self, action_ids: Iterable[str]) -> dict[str, str]:
        """Union of pip requirements for the given actions."""
        deps: dict[str, str] = {}
        for action_id in action_ids:
            descriptor = self.resolve(action_id)
            if descriptor:
                deps.update(descriptor.dependencies)
        return dict(sorted(deps.items()))

    def env_vars_for(self, action_ids: Iterable[str]) -> list[EnvVar]:
        """Union of environment variables for the given actions, in first-seen order."""
        seen: dict[str, EnvVar] = {}
        for action_id in action_ids:
            descriptor = self.resolve(action_id)
            if descriptor:
                for env_var in descriptor.env_vars:
                    seen.setdefault(env_var.name, env_var)
        return list(seen.values())

    def prompt_catalog(self) -> str:
        """One line per action, for an authoring assistant's system prompt."""
        lines = []
        for descriptor in self.actions():
            fields = ", ".join(
                f"{f.name}{'*' if f.required else ''}" for f in descriptor.config_schema
            )
            line = f"- {descriptor.action_id} ({descriptor.label})"
            if descriptor.description:
                line += f": {descriptor.description}"
            if fields:
                line += f" [fields: {fields}]"
            lines.append(line)
        return "\n".join(lines)

    # ========== Execution ==========

    def execute(
        self,
        descriptor: ActionDescriptor,
        config: dict[str, Any],
        credentials: dict[str, str],
    ) -> ActionResult:
        """Invoke an action. Never raises; failures come back as ``ok=False``."""
        try:
            payload = descriptor.execute(config, credentials)
        except Exception as e:
            logger.error(f"Action '{descriptor.action_id}' raised: {e}")
            return ActionResult.failure(f"{descriptor.label} failed: {e}")
        return ActionResult.from_payload(payload)


def _merge_env_vars(*groups: tuple[EnvVar, ...]) -> tuple[EnvVar, ...]:
    merged: dict[str, EnvVar] = {}
    for group in groups:
        for env_var in group:
            merged.setdefault(env_var.name, env_var)
    return tuple(merged.values())


_registry = ActionRegistry()
_initialized = False
_init_lock = threading.Lock()


def get_registry() -> ActionRegistry:
    """The process-wide registry (empty until :func:`init_registry` runs)."""
    return _registry


def init_registry() -> ActionRegistry:
    """Register the bundled integrations into the process-wide registry, once."""
    global _initialized
    with _init_lock:
        if not _initialized:
            from flowsmith.integrations import register_bundled

            register_bundled(_registry)
            _initialized = True
    return _registry
