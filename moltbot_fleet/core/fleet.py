"""Fleet specifications: parse the YAML document and expand it into instance definitions."""

import re
import string
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .instance import NAME_PATTERN, InstanceDefinition, ResourceLimits
from ..config import Config

_NAME_RE = re.compile(NAME_PATTERN)
# Accepted format specs for {n}: "", "d", "3d", "03d"
_INT_FORMAT_RE = re.compile(r"^(0?[1-9][0-9]*)?d?$")


class PortDefaults(BaseModel):
    gateway_start: int = Field(default_factory=lambda: Config.FLEET_GATEWAY_START, ge=1, le=65535)
    bridge_start: int = Field(default_factory=lambda: Config.FLEET_BRIDGE_START, ge=1, le=65535)

    model_config = {"extra": "forbid"}


class FleetDefaults(BaseModel):
    """Fleet-wide defaults every rule is layered over."""
    config_base: str = Field(default_factory=lambda: str(Config.CONFIG_BASE))
    workspace_base: str = Field(default_factory=lambda: str(Config.WORKSPACE_BASE))
    image: str = Field(default_factory=lambda: Config.IMAGE_NAME)
    ports: PortDefaults = Field(default_factory=PortDefaults)
    resources: ResourceLimits = Field(default_factory=ResourceLimits)

    # Accepted for compatibility with older instances.yaml files; unused
    docker: Optional[dict] = None

    model_config = {"extra": "forbid"}

    def config_dir(self, name: str) -> str:
        return str(Path(self.config_base).expanduser() / name)

    def workspace_dir(self, name: str) -> str:
        return str(Path(self.workspace_base).expanduser() / name)


class NamedRule(BaseModel):
    """One explicit instance."""
    name: str = Field(..., pattern=NAME_PATTERN)
    gateway_port: Optional[int] = Field(None, ge=1, le=65535)
    bridge_port: Optional[int] = Field(None, ge=1, le=65535)
    resources: Optional[ResourceLimits] = None

    model_config = {"extra": "forbid"}


class NamesRule(BaseModel):
    """An explicit list of names sharing a port base."""
    names: List[str] = Field(..., min_length=1)
    gateway_port_start: Optional[int] = Field(None, ge=1, le=65535)
    bridge_port_start: Optional[int] = Field(None, ge=1, le=65535)
    resources: Optional[ResourceLimits] = None
    overrides: Dict[str, ResourceLimits] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @field_validator("names")
    @classmethod
    def _check_names(cls, names):
        for name in names:
            if not _NAME_RE.match(name):
                raise ValueError(f"invalid instance name '{name}'")
        return names


class RangeRule(BaseModel):
    """One instance per integer of a closed range, named by a pattern."""
    pattern: str
    range: Tuple[int, int]
    gateway_port_start: Optional[int] = Field(None, ge=1, le=65535)
    bridge_port_start: Optional[int] = Field(None, ge=1, le=65535)
    resources: Optional[ResourceLimits] = None
    overrides: Dict[str, ResourceLimits] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @field_validator("range")
    @classmethod
    def _check_range(cls, value):
        start, end = value
        if end < start:
            raise ValueError(f"range end {end} is before start {start}")
        return value

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, pattern):
        try:
            render_name(pattern, 0)
        except ConfigurationError as e:
            raise ValueError(str(e))
        if not any(field == "n" for _, field, _, _ in string.Formatter().parse(pattern)):
            raise ValueError(f"pattern '{pattern}' must contain {{n}}")
        return pattern

    def names(self) -> List[str]:
        start, end = self.range
        return [render_name(self.pattern, n) for n in range(start, end + 1)]


Rule = Union[NamedRule, NamesRule, RangeRule]


class FleetSpec(BaseModel):
    """A parsed fleet specification document."""
    defaults: FleetDefaults = Field(default_factory=FleetDefaults)
    instances: List[Rule] = Field(default_factory=list)


def render_name(template: str, n: int) -> str:
    """
    Interpolate an integer into a name template.

    Only the ``{n}`` field is allowed, optionally with a zero-padded integer
    format such as ``{n:03d}``.

    Raises:
        ConfigurationError: If the template uses anything else or renders an invalid name
    """
    parts = []
    try:
        parsed = list(string.Formatter().parse(template))
    except ValueError as e:
        raise ConfigurationError(f"Invalid name pattern '{template}': {e}")

    for literal, field, spec, conversion in parsed:
        parts.append(literal)
        if field is None:
            continue
        if field != "n" or conversion is not None:
            raise ConfigurationError(
                f"Invalid name pattern '{template}': only {{n}} may be substituted"
            )
        if not _INT_FORMAT_RE.match(spec or ""):
            raise ConfigurationError(
                f"Invalid name pattern '{template}': unsupported format '{spec}'"
            )
        parts.append(format(n, spec or "d"))

    name = "".join(parts)
    if not _NAME_RE.match(name):
        raise ConfigurationError(
            f"Pattern '{template}' renders invalid instance name '{name}'"
        )
    return name


def parse_rule(item: dict, index: int) -> Rule:
    """
    Validate one entry of the ``instances`` list.

    Raises:
        ConfigurationError: If the entry is not a recognised, well-formed rule
    """
    if not isinstance(item, dict):
        raise ConfigurationError(f"instances[{index}]: expected a mapping, got {type(item).__name__}")

    if "pattern" in item or "range" in item:
        model = RangeRule
    elif "names" in item:
        model = NamesRule
    elif "name" in item:
        model = NamedRule
    else:
        raise ConfigurationError(
            f"instances[{index}]: rule needs one of 'name', 'names' or 'pattern' + 'range'"
        )

    try:
        return model.model_validate(item)
    except ValidationError as e:
        raise ConfigurationError(f"instances[{index}]: {e}")


def parse_fleet_spec(data: Optional[dict]) -> FleetSpec:
    """
    Build a FleetSpec from a loaded YAML document.

    Raises:
        ConfigurationError: If the document or any rule is malformed
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError("Fleet specification must be a mapping")

    unknown = set(data) - {"defaults", "instances"}
    if unknown:
        raise ConfigurationError(f"Unknown top-level keys: {', '.join(sorted(unknown))}")

    try:
        defaults = FleetDefaults.model_validate(data.get("defaults") or {})
    except ValidationError as e:
        raise ConfigurationError(f"defaults: {e}")

    items = data.get("instances") or []
    if not isinstance(items, list):
        raise ConfigurationError("'instances' must be a list of rules")

    rules = [parse_rule(item, i) for i, item in enumerate(items)]
    return FleetSpec(defaults=defaults, instances=rules)


def load_fleet_spec(path: Path) -> FleetSpec:
    """
    Load a fleet specification from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unreadable, or invalid
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(
            f"Config file not found: {path}\n"
            "Copy instances.example.yaml to instances.yaml and customize"
        )

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    return parse_fleet_spec(data)


def range_rule(
    prefix: str,
    start: int,
    end: int,
    gateway_start: int = Config.RANGE_GATEWAY_START,
    bridge_start: int = Config.RANGE_BRIDGE_START,
) -> RangeRule:
    """
    The single pattern + range rule equivalent to ``create-range``.

    Raises:
        ConfigurationError: If the prefix or range is invalid
    """
    if not _NAME_RE.match(prefix):
        raise ConfigurationError(
            f"Invalid prefix '{prefix}'. Use only alphanumeric characters, dashes, and underscores."
        )
    return parse_rule(
        {
            "pattern": f"{prefix}-{{n}}",
            "range": [start, end],
            "gateway_port_start": gateway_start,
            "bridge_port_start": bridge_start,
        },
        0,
    )


def _rule_entries(rule: Rule) -> List[Tuple[str, Optional[int], Optional[int], Optional[ResourceLimits]]]:
    """(name, gateway offset base, bridge offset base, per-instance override) for a rule."""
    if isinstance(rule, NamedRule):
        return [(rule.name, rule.gateway_port, rule.bridge_port, None)]

    names = rule.names if isinstance(rule, NamesRule) else rule.names()
    unknown = set(rule.overrides) - set(names)
    if unknown:
        raise ConfigurationError(
            f"Overrides reference names the rule does not produce: {', '.join(sorted(unknown))}"
        )
    return [(name, None, None, rule.overrides.get(name)) for name in names]


def expand(spec: FleetSpec, defaults: Optional[FleetDefaults] = None) -> List[InstanceDefinition]:
    """
    Expand a fleet specification into concrete instance definitions.

    Rules are processed in order; range rules produce names in ascending
    order. Ports are ``base + offset`` where offset is the zero-based
    position within the rule. Resources merge per field: built-in defaults,
    then fleet defaults, then rule resources, then per-instance overrides.

    Args:
        spec: Parsed fleet specification
        defaults: Overrides spec.defaults when given

    Raises:
        ConfigurationError: If two rules produce the same name, or a rule runs past the port range
    """
    defaults = defaults or spec.defaults
    base_resources = ResourceLimits.builtin().merged(defaults.resources)
    definitions = []
    seen = set()

    for rule in spec.instances:
        entries = _rule_entries(rule)

        if isinstance(rule, NamedRule):
            # Missing ports are searched from the fleet-wide bases at allocation time
            offset_bases = None
            search_bases = (defaults.ports.gateway_start, defaults.ports.bridge_start)
        else:
            offset_bases = (
                rule.gateway_port_start or defaults.ports.gateway_start,
                rule.bridge_port_start or defaults.ports.bridge_start,
            )
            search_bases = (None, None)
            highest = max(offset_bases) + len(entries) - 1
            if highest > Config.PORT_RANGE_MAX:
                raise ConfigurationError(
                    f"Rule for '{entries[0][0]}'..'{entries[-1][0]}' needs ports up to {highest}, "
                    f"beyond {Config.PORT_RANGE_MAX}"
                )

        for offset, (name, gateway_port, bridge_port, override) in enumerate(entries):
            if name in seen:
                raise ConfigurationError(f"Duplicate instance name '{name}' in fleet specification")
            seen.add(name)

            if offset_bases is not None:
                gateway_port = offset_bases[0] + offset
                bridge_port = offset_bases[1] + offset

            try:
                definition = InstanceDefinition(
                    name=name,
                    gateway_port=gateway_port,
                    bridge_port=bridge_port,
                    gateway_base=search_bases[0],
                    bridge_base=search_bases[1],
                    config_dir=defaults.config_dir(name),
                    workspace_dir=defaults.workspace_dir(name),
                    image=defaults.image,
                    resources=base_resources.merged(rule.resources, override),
                )
            except ValidationError as e:
                raise ConfigurationError(f"Instance '{name}': {e}")
            definitions.append(definition)

    return definitions
