"""Six-layer workflow skeleton builder.

Before any live data arrives, the dashboard renders a complete skeleton of
the workflow: one entry per layer, always six, in a fixed order. Each entry
is derived from the agent directory in two filtering passes:

1. Persona ownership: an agent belongs to the requesting persona when it is
   tagged for that persona, when it is the persona's identity agent in the
   Role layer, or when the persona is an administrator.
2. Command relevance: admin-configured visibility rules keyed by
   ``(command, layer)`` narrow the list further and cap its length.

Layers with no surviving agent get a placeholder entry, so structure never
depends on how much data the directory holds.
"""

import hashlib
import json
import re
from collections import OrderedDict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tracking.steps import StepStatus

logger = structlog.get_logger(__name__)

DEFAULT_MAX_AGENTS = 3
DEFAULT_CACHE_SIZE = 128
DEFAULT_RULE_KEY = "default"
SKELETON_SIZE = 6


@dataclass(frozen=True)
class LayerDefinition:
    """One of the six fixed workflow layers.

    Attributes:
        key: Key of the layer in the executor's agent directory.
        name: Layer name as used on step events (e.g. "Meta Brain").
        aliases: Other directory keys the layer is known by.
    """

    key: str
    name: str
    aliases: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return f"{self.name} Layer"

    @property
    def rule_key(self) -> str:
        return normalize_key(self.name)


LAYERS: tuple[LayerDefinition, ...] = (
    LayerDefinition("experience", "Experience"),
    LayerDefinition("metaBrain", "Meta Brain", ("meta_brain", "metabrain")),
    # The executor keys Role-layer agents as "cognitive"
    LayerDefinition("cognitive", "Role", ("role",)),
    LayerDefinition("process", "Process"),
    LayerDefinition("system", "System"),
    LayerDefinition("interface", "Interface"),
)

IDENTITY_LAYERS = frozenset({"Role"})

_LAYER_SUFFIX = re.compile(r"\s+layer$", re.IGNORECASE)


def normalize_key(value: str) -> str:
    """Normalize a command or layer name into a visibility-rule key."""
    return re.sub(r"\s+", "_", value.strip().lower())


def normalize_layer_name(value: str | None) -> str:
    """Normalize a layer name for matching ("System Layer" == "system")."""
    if not value:
        return ""
    return _LAYER_SUFFIX.sub("", value.strip()).lower()


KNOWN_LAYER_NAMES = frozenset(normalize_layer_name(layer.name) for layer in LAYERS)


class AgentDescriptor(BaseModel):
    """An agent as listed in the executor's directory."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    id: int | str | None = None
    name: str = ""
    persona: str | None = None
    type: str | None = None
    layer: str | None = None
    specialization: str | None = None
    description: str | None = None
    action: str | None = None
    capabilities: list[str] | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    def _config_str(self, name: str) -> str | None:
        value = self.config.get(name)
        return value if isinstance(value, str) and value else None

    @property
    def persona_tag(self) -> str | None:
        tag = self.persona or self._config_str("persona")
        return tag.lower() if tag else None

    @property
    def resolved_action(self) -> str:
        """Action text shown when this agent runs a layer on its own."""
        return (
            self.specialization
            or self._config_str("specialization")
            or self.description
            or self._config_str("description")
            or self.action
            or self._config_str("action")
            or f"Execute {self.name}"
        )

    @property
    def resolved_description(self) -> str:
        return self.description or self._config_str("description") or ""

    @property
    def resolved_capabilities(self) -> list[str]:
        if self.capabilities:
            return list(self.capabilities)
        raw = self.config.get("capabilities")
        if isinstance(raw, list):
            return [str(item) for item in raw]
        return []

    @property
    def search_text(self) -> str:
        """Lower-cased text searched by keyword visibility rules."""
        return " ".join(
            part
            for part in (self.name, self.description, self.specialization, self.action)
            if part
        ).lower()

    def matches_reference(self, references: Iterable[str | int]) -> bool:
        """Whether this agent is named by id or name in a rule's agent list."""
        refs = {str(ref) for ref in references}
        return (self.id is not None and str(self.id) in refs) or self.name in refs


class AgentDirectory(BaseModel):
    """Available agents grouped by layer key."""

    agents_by_layer: dict[str, list[AgentDescriptor]] = Field(default_factory=dict)

    def agents_for(self, layer: LayerDefinition) -> list[AgentDescriptor]:
        """Agents listed under a layer's key, its aliases or its name."""
        candidates = (layer.key, *layer.aliases, layer.name, normalize_key(layer.name))
        for key in candidates:
            if key in self.agents_by_layer:
                return list(self.agents_by_layer[key])
        return []

    def fingerprint(self) -> str:
        """Stable digest of the directory contents."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Sequence[Mapping[str, Any]]] | None) -> "AgentDirectory":
        """Build a directory from a ``{layer_key: [agent, ...]}`` mapping."""
        if not data:
            return cls()
        return cls(agents_by_layer={
            key: [AgentDescriptor.model_validate(agent) for agent in agents if isinstance(agent, Mapping)]
            for key, agents in data.items()
            if isinstance(agents, (list, tuple))
        })

    @classmethod
    def from_hierarchy_config(cls, config: Mapping[str, Any] | None) -> "AgentDirectory":
        """Build a directory from the executor's unified hierarchy config.

        The Experience and Meta Brain layers are single configuration records
        (``experienceLayer``, ``metaBrainLayer``) rather than agent lists; each
        becomes a one-agent layer.
        """
        if not config:
            return cls()

        agents_by_layer: dict[str, list[AgentDescriptor]] = {}

        experience = config.get("experienceLayer")
        if isinstance(experience, Mapping):
            agents_by_layer["experience"] = [AgentDescriptor(
                id=experience.get("id"),
                name=experience.get("companyName") or "",
                type="Insurance Company",
                layer="Experience",
                config=dict(experience),
            )]

        meta_brain = config.get("metaBrainLayer")
        if isinstance(meta_brain, Mapping):
            agents_by_layer["metaBrain"] = [AgentDescriptor(
                id=meta_brain.get("id"),
                name=meta_brain.get("orchestratorName") or "",
                type="Central Orchestrator",
                layer="Meta Brain",
                config=dict(meta_brain),
            )]

        layer_keys = {normalize_layer_name(layer.name): layer.key for layer in LAYERS}
        for layer_data in config.get("layers") or []:
            if not isinstance(layer_data, Mapping):
                continue
            key = layer_keys.get(normalize_layer_name(layer_data.get("layer")))
            agents = layer_data.get("agents")
            if key is None or key in agents_by_layer or not isinstance(agents, list):
                continue
            agents_by_layer[key] = [
                AgentDescriptor.model_validate(agent)
                for agent in agents
                if isinstance(agent, Mapping)
            ]

        return cls(agents_by_layer=agents_by_layer)


class VisibilityRule(BaseModel):
    """Admin-configured visibility rule for one (command, layer) pair."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_agents: int = Field(default=DEFAULT_MAX_AGENTS, ge=0)
    include_agents: list[str | int] = Field(default_factory=list)
    exclude_agents: list[str | int] = Field(default_factory=list)
    filter_by_keywords: list[str] = Field(default_factory=list)


class VisibilityRules(BaseModel):
    """Visibility rules keyed by normalized command, then normalized layer.

    A ``default`` command entry applies to commands without their own rules.
    """

    rules: dict[str, dict[str, VisibilityRule]] = Field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "VisibilityRules":
        if not data:
            return cls()
        rules: dict[str, dict[str, VisibilityRule]] = {}
        for command, layers in data.items():
            if not isinstance(layers, Mapping):
                continue
            rules[normalize_key(command)] = {
                normalize_key(layer): VisibilityRule.model_validate(rule)
                for layer, rule in layers.items()
                if isinstance(rule, Mapping)
            }
        return cls(rules=rules)

    def rule_for(self, command: str | None, layer_name: str) -> VisibilityRule | None:
        """Find the rule for a command and layer, falling back to ``default``."""
        command_rules = self.rules.get(normalize_key(command)) if command else None
        if command_rules is None:
            command_rules = self.rules.get(DEFAULT_RULE_KEY)
        if command_rules is None:
            return None
        return command_rules.get(normalize_key(layer_name))


class HierarchyConfig(BaseModel):
    """The executor's hierarchy config, reduced to what the skeleton needs."""

    directory: AgentDirectory = Field(default_factory=AgentDirectory)
    visibility_rules: VisibilityRules = Field(default_factory=VisibilityRules)
    company_name: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "HierarchyConfig":
        if not payload:
            return cls()
        company_name = None
        for section in ("experienceLayer", "experienceConfig"):
            value = payload.get(section)
            if isinstance(value, Mapping) and value.get("companyName"):
                company_name = str(value["companyName"])
                break
        return cls(
            directory=AgentDirectory.from_hierarchy_config(payload),
            visibility_rules=VisibilityRules.from_mapping(payload.get("agentVisibilityRules")),
            company_name=company_name,
        )


class SkeletonEntry(BaseModel):
    """Placeholder-or-planned state of one layer before live data."""

    model_config = ConfigDict(frozen=True)

    position: int
    layer: str
    layer_name: str
    agent: str
    action: str
    status: StepStatus
    is_parallel: bool = False
    agents: tuple[AgentDescriptor, ...] = ()
    description: str = ""
    capabilities: tuple[str, ...] = ()
    timeout_ms: int = 5000


# -----------------------------------------------------------------------------
# Filtering
# -----------------------------------------------------------------------------


def owns_agent(
    agent: AgentDescriptor,
    persona: str,
    layer: LayerDefinition,
    *,
    admin_personas: Iterable[str] = ("admin",),
    role_agent_names: Mapping[str, str] | None = None,
) -> bool:
    """Whether an agent belongs to a persona within a layer."""
    persona_key = persona.lower()
    if persona_key in {p.lower() for p in admin_personas}:
        return True
    if agent.persona_tag == persona_key:
        return True
    if layer.name in IDENTITY_LAYERS and role_agent_names:
        expected = {k.lower(): v for k, v in role_agent_names.items()}.get(persona_key)
        if expected is not None and agent.name == expected:
            return True
    return False


def filter_agents(
    agents: Sequence[AgentDescriptor],
    rule: VisibilityRule | None,
    default_max: int = DEFAULT_MAX_AGENTS,
) -> list[AgentDescriptor]:
    """Apply a visibility rule to a layer's agents.

    Include and keyword filters only narrow the list when they match at least
    one agent; an include list naming nobody present leaves the list as is.

    Args:
        agents: Agents that passed the persona filter, in directory order.
        rule: The applicable rule, or None.
        default_max: Cap applied when there is no rule.

    Returns:
        The surviving agents, in their original order.
    """
    if rule is None:
        return list(agents[:max(default_max, 0)])

    filtered = list(agents)

    if rule.include_agents:
        included = [a for a in filtered if a.matches_reference(rule.include_agents)]
        if included:
            filtered = included

    if rule.exclude_agents:
        filtered = [a for a in filtered if not a.matches_reference(rule.exclude_agents)]

    if rule.filter_by_keywords:
        keywords = [k.lower() for k in rule.filter_by_keywords if k]
        matched = [a for a in filtered if any(k in a.search_text for k in keywords)]
        if matched:
            filtered = matched

    return filtered[:rule.max_agents]


# -----------------------------------------------------------------------------
# Building
# -----------------------------------------------------------------------------


def _build_entry(
    index: int,
    layer: LayerDefinition,
    agents: Sequence[AgentDescriptor],
) -> SkeletonEntry:
    common: dict[str, Any] = {
        "position": index + 1,
        "layer": layer.display_name,
        "layer_name": layer.name,
        "status": StepStatus.RUNNING if index == 0 else StepStatus.PENDING,
        "timeout_ms": 5000 + index * 2000,
    }

    if not agents:
        return SkeletonEntry(
            agent=f"{layer.name} Layer",
            action=f"Initialize {layer.name.lower()} processing",
            **common,
        )

    if len(agents) == 1:
        agent = agents[0]
        return SkeletonEntry(
            agent=agent.name,
            action=agent.resolved_action,
            agents=(agent,),
            description=agent.resolved_description,
            capabilities=tuple(agent.resolved_capabilities),
            **common,
        )

    capabilities: dict[str, None] = {}
    for agent in agents:
        capabilities.update(dict.fromkeys(agent.resolved_capabilities))
    return SkeletonEntry(
        agent=f"{len(agents)} Agents Running Parallel",
        action="Parallel processing: " + ", ".join(a.name for a in agents),
        is_parallel=True,
        agents=tuple(agents),
        capabilities=tuple(capabilities),
        **common,
    )


def build_skeleton(
    directory: AgentDirectory | None,
    persona: str,
    command: str | None,
    rules: VisibilityRules | None = None,
    *,
    admin_personas: Iterable[str] = ("admin",),
    role_agent_names: Mapping[str, str] | None = None,
    default_max: int = DEFAULT_MAX_AGENTS,
) -> tuple[SkeletonEntry, ...]:
    """Build the six-entry skeleton for a persona and command.

    Args:
        directory: Available agents by layer. None is treated as empty.
        persona: The requesting persona.
        command: The command being executed.
        rules: Visibility rules; None means no rules.
        admin_personas: Personas that own every agent.
        role_agent_names: Persona to Role-layer agent exact-match names.
        default_max: Per-layer cap when no rule applies.

    Returns:
        Exactly six entries in fixed layer order.
    """
    directory = directory or AgentDirectory()
    rules = rules or VisibilityRules()
    admin_personas = tuple(admin_personas)

    entries = []
    for index, layer in enumerate(LAYERS):
        owned = [
            agent
            for agent in directory.agents_for(layer)
            if owns_agent(
                agent,
                persona,
                layer,
                admin_personas=admin_personas,
                role_agent_names=role_agent_names,
            )
        ]
        visible = filter_agents(owned, rules.rule_for(command, layer.name), default_max)
        entries.append(_build_entry(index, layer, visible))

    skeleton = tuple(entries)
    assert len(skeleton) == SKELETON_SIZE
    return skeleton


def workflow_title(company_name: str, persona: str, command: str | None) -> str:
    """Title shown above the workflow."""
    if command:
        return f"{company_name} {command} Execution"
    return f"{company_name} {persona.capitalize()} Workflow"


class SkeletonBuilder:
    """Builds skeletons and memoizes them per (persona, command, directory).

    A skeleton is immutable once built; a changed directory produces a new
    fingerprint and therefore a fresh skeleton. At most ``cache_size``
    skeletons are kept, least recently used first out.
    """

    def __init__(
        self,
        *,
        admin_personas: Iterable[str] = ("admin",),
        role_agent_names: Mapping[str, str] | None = None,
        default_max: int = DEFAULT_MAX_AGENTS,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self.admin_personas = tuple(admin_personas)
        self.role_agent_names = dict(role_agent_names or {})
        self.default_max = default_max
        self.cache_size = cache_size
        self._cache: OrderedDict[tuple[str, str, str, str], tuple[SkeletonEntry, ...]] = OrderedDict()

    def build(
        self,
        hierarchy: HierarchyConfig,
        persona: str,
        command: str | None,
    ) -> tuple[SkeletonEntry, ...]:
        rules_digest = hashlib.sha256(
            hierarchy.visibility_rules.model_dump_json().encode("utf-8")
        ).hexdigest()[:16]
        cache_key = (persona.lower(), command or "", hierarchy.directory.fingerprint(), rules_digest)
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return cached

        skeleton = build_skeleton(
            hierarchy.directory,
            persona,
            command,
            hierarchy.visibility_rules,
            admin_personas=self.admin_personas,
            role_agent_names=self.role_agent_names,
            default_max=self.default_max,
        )
        self._cache[cache_key] = skeleton
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        logger.debug(
            "skeleton_built",
            persona=persona,
            command=command,
            parallel_layers=[e.layer_name for e in skeleton if e.is_parallel],
            placeholder_layers=[e.layer_name for e in skeleton if not e.agents],
        )
        return skeleton
