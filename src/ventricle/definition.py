"""
Pulse definitions: parsing, validation and normalization.

A definition file is a JSON object, or the same object written as YAML:

    id: releases
    name: Project releases
    heartbeat: 30m
    anchor:
      url: https://example.com/releases
      select: ".release:first-child .tag"
    flow:
      - step: 1
        action: fetch
        url: https://example.com/releases/{{ anchor }}
        extract:
          title: {select: h1}
          content: {select: ".notes", attribute: innerHtml}

Parsing produces immutable dataclasses with every default filled in, so the
rest of the engine never has to guess at a missing key.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ventricle.errors import InvalidDefinition

DEFAULT_HEARTBEAT = "1h"
DEFAULT_ATTRIBUTE = "innerText"
DEFAULT_JOIN = "\n"

HEARTBEAT_PATTERN = re.compile(r"^(\d+)([mhd])$")
_UNIT_SECONDS = {"m": 60, "h": 60 * 60, "d": 24 * 60 * 60}

_MARKDOWN_LINK = re.compile(r"^\[[^\]]+\]\((https?://[^)]+)\)$", re.IGNORECASE)
_WRAPPED_URL = re.compile(r"^\[(https?://[^\]]+)\]$", re.IGNORECASE)


@dataclass(frozen=True)
class AnchorRule:
    url: str
    select: str
    attribute: str = DEFAULT_ATTRIBUTE


@dataclass(frozen=True)
class FieldRule:
    select: str
    attribute: str = DEFAULT_ATTRIBUTE
    required: bool = True


@dataclass(frozen=True)
class ExtractRule:
    select: Optional[str] = None
    attribute: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    required: bool = True
    all: bool = False
    join_with: str = DEFAULT_JOIN
    template: Optional[str] = None
    fields: Dict[str, FieldRule] = field(default_factory=dict)

    @property
    def is_template_only(self) -> bool:
        return self.select is None


@dataclass(frozen=True)
class FlowStep:
    step: float
    url: str
    extract: Dict[str, ExtractRule] = field(default_factory=dict)
    action: str = "fetch"


@dataclass(frozen=True)
class PulseDefinition:
    id: str
    name: str
    heartbeat: str
    anchor: AnchorRule
    flow: Tuple[FlowStep, ...] = ()

    def ordered_steps(self) -> Tuple[FlowStep, ...]:
        """Steps by ascending ``step`` number; ties keep file order."""
        return tuple(sorted(self.flow, key=lambda s: s.step))


# ── Normalizers ──────────────────────────────────────────────────────────────

def normalize_heartbeat(value: Any) -> str:
    """Return a ``<n>[mhd]`` duration, or ``1h`` for anything unusable.

    >>> normalize_heartbeat(" 3 H ")
    '3h'
    """
    if not isinstance(value, str):
        return DEFAULT_HEARTBEAT
    heartbeat = re.sub(r"\s+", "", value.strip().lower())
    if HEARTBEAT_PATTERN.match(heartbeat):
        return heartbeat
    return DEFAULT_HEARTBEAT


def heartbeat_seconds(value: str) -> int:
    """Convert a heartbeat string to seconds. Zero or malformed means one hour."""
    match = HEARTBEAT_PATTERN.match(normalize_heartbeat(value))
    amount = int(match.group(1))
    if amount <= 0:
        return _UNIT_SECONDS["h"]
    return amount * _UNIT_SECONDS[match.group(2)]


def normalize_url(raw: str) -> str:
    """Strip the link wrappers people paste from chat and note apps.

    ``[text](https://x)`` and ``[https://x]`` both become ``https://x``.
    """
    trimmed = raw.strip()
    match = _MARKDOWN_LINK.match(trimmed) or _WRAPPED_URL.match(trimmed)
    if match:
        return match.group(1)
    return trimmed


# ── Field helpers ────────────────────────────────────────────────────────────

def _require_mapping(value: Any, pointer: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidDefinition("must be an object", pointer)
    return value


def _require_string(source: Dict[str, Any], key: str, pointer: str) -> str:
    value = source.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidDefinition("must be a non-empty string", _join(pointer, key))
    return value.strip()


def _optional_string(source: Dict[str, Any], key: str, pointer: str,
                     trim: bool = True) -> Optional[str]:
    value = source.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidDefinition("must be a string", _join(pointer, key))
    if trim:
        value = value.strip()
        return value or None
    return value


def _optional_bool(source: Dict[str, Any], key: str, default: bool, pointer: str) -> bool:
    value = source.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise InvalidDefinition("must be true or false", _join(pointer, key))
    return value


def _attribute(source: Dict[str, Any], pointer: str) -> str:
    return _optional_string(source, "attribute", pointer) or DEFAULT_ATTRIBUTE


def _join(pointer: str, key: str) -> str:
    return f"{pointer}.{key}" if pointer else key


# ── Parsing ──────────────────────────────────────────────────────────────────

def _parse_field(raw: Any, pointer: str) -> FieldRule:
    data = _require_mapping(raw, pointer)
    return FieldRule(
        select=_require_string(data, "select", pointer),
        attribute=_attribute(data, pointer),
        required=_optional_bool(data, "required", True, pointer),
    )


def _parse_extract(raw: Any, pointer: str) -> ExtractRule:
    data = _require_mapping(raw, pointer)
    select = _optional_string(data, "select", pointer)
    template = _optional_string(data, "template", pointer)
    if select is None and template is None:
        raise InvalidDefinition('needs a "select" or a "template"', pointer)

    fields: Dict[str, FieldRule] = {}
    if data.get("fields") is not None:
        fields_pointer = _join(pointer, "fields")
        if select is None:
            raise InvalidDefinition('requires "select" on the enclosing rule', fields_pointer)
        for name, field_raw in _require_mapping(data["fields"], fields_pointer).items():
            fields[str(name)] = _parse_field(field_raw, _join(fields_pointer, str(name)))

    join_with = _optional_string(data, "joinWith", pointer, trim=False)
    return ExtractRule(
        select=select,
        attribute=_attribute(data, pointer) if select is not None else None,
        prefix=_optional_string(data, "prefix", pointer, trim=False),
        suffix=_optional_string(data, "suffix", pointer, trim=False),
        required=_optional_bool(data, "required", True, pointer),
        all=_optional_bool(data, "all", False, pointer),
        join_with=DEFAULT_JOIN if join_with is None else join_with,
        template=template,
        fields=fields,
    )


def _parse_step(raw: Any, index: int) -> FlowStep:
    pointer = f"flow[{index}]"
    data = _require_mapping(raw, pointer)

    action = data.get("action")
    if not isinstance(action, str) or action.strip() != "fetch":
        raise InvalidDefinition('only the "fetch" action is supported', _join(pointer, "action"))

    # bool is an int subclass; "step: true" is not a step number
    number = data.get("step")
    if isinstance(number, bool) or not isinstance(number, (int, float)):
        number = index + 1

    extract_pointer = _join(pointer, "extract")
    extract: Dict[str, ExtractRule] = {}
    for name, rule_raw in _require_mapping(data.get("extract"), extract_pointer).items():
        extract[str(name)] = _parse_extract(rule_raw, _join(extract_pointer, str(name)))

    return FlowStep(
        step=number,
        url=normalize_url(_require_string(data, "url", pointer)),
        extract=extract,
    )


def parse_definition(raw: Any) -> PulseDefinition:
    """Validate an already-decoded object and build a PulseDefinition."""
    if not isinstance(raw, dict):
        raise InvalidDefinition("root must be an object")

    pulse_id = _require_string(raw, "id", "")
    name = _require_string(raw, "name", "")

    anchor_raw = _require_mapping(raw.get("anchor"), "anchor")
    anchor = AnchorRule(
        url=normalize_url(_require_string(anchor_raw, "url", "anchor")),
        select=_require_string(anchor_raw, "select", "anchor"),
        attribute=_attribute(anchor_raw, "anchor"),
    )

    flow_raw = raw.get("flow")
    if not isinstance(flow_raw, list):
        raise InvalidDefinition("must be an array", "flow")

    return PulseDefinition(
        id=pulse_id,
        name=name,
        heartbeat=normalize_heartbeat(raw.get("heartbeat")),
        anchor=anchor,
        flow=tuple(_parse_step(step, i) for i, step in enumerate(flow_raw)),
    )


def parse(raw_text: str) -> PulseDefinition:
    """Parse definition text. JSON when it starts with ``{`` or ``[``, YAML otherwise."""
    trimmed = raw_text.strip()
    if not trimmed:
        raise InvalidDefinition("pulse file is empty")

    try:
        if trimmed.startswith(("{", "[")):
            data = json.loads(trimmed)
        else:
            data = yaml.safe_load(trimmed)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise InvalidDefinition(f"could not be decoded: {e}") from e

    return parse_definition(data)


def load_definition(path) -> PulseDefinition:
    return parse(Path(path).read_text(encoding="utf-8"))
