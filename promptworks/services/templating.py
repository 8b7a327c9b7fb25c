"""Placeholder parsing and substitution for prompt content.

Content text may reference values as ``{{name}}`` or ``${name}``; both are
treated the same. A template is parsed once into an ordered list of literal
and placeholder segments, and rendering is a plain mapping lookup over those
segments.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Union

from ..errors import DomainError

# one pass over both syntaxes keeps first-appearance order across them
PLACEHOLDER_RE = re.compile(r"\{\{([^{}]+)\}\}|\$\{([^{}]+)\}")


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Placeholder:
    name: str
    raw: str


Segment = Union[Literal, Placeholder]


def parse_template(text: Optional[str]) -> List[Segment]:
    segments: List[Segment] = []
    if not text:
        return segments
    pos = 0
    for m in PLACEHOLDER_RE.finditer(text):
        name = (m.group(1) if m.group(1) is not None else m.group(2)).strip()
        if not name:
            # "{{ }}" is not a placeholder, keep it as text
            continue
        if m.start() > pos:
            segments.append(Literal(text[pos:m.start()]))
        segments.append(Placeholder(name=name, raw=m.group(0)))
        pos = m.end()
    if pos < len(text):
        segments.append(Literal(text[pos:]))
    return segments


def placeholder_names(text: Optional[str]) -> List[str]:
    """Distinct placeholder names in order of first appearance."""
    seen: List[str] = []
    for seg in parse_template(text):
        if isinstance(seg, Placeholder) and seg.name not in seen:
            seen.append(seg.name)
    return seen


def extract_parameters(text: Optional[str], existing: Optional[Iterable[Mapping[str, Any]]] = None) -> List[dict]:
    """Build parameter descriptors for `text`.

    Descriptors default to required with an empty description. When `existing`
    carries a descriptor for a name that is still present, its `required` and
    `description` overrides are kept.
    """
    previous = {}
    for p in existing or []:
        name = (p.get("name") or "").strip() if isinstance(p, Mapping) else ""
        if name:
            previous[name] = p

    params = []
    for name in placeholder_names(text):
        old = previous.get(name) or {}
        params.append({
            "name": name,
            "required": bool(old.get("required", True)),
            "description": old.get("description") or "",
        })
    return params


def merge_parameters(groups: Iterable[Iterable[Mapping[str, Any]]]) -> List[dict]:
    """Flatten several descriptor lists, first occurrence of a name wins."""
    out: List[dict] = []
    names = set()
    for params in groups:
        for p in params or []:
            name = p.get("name")
            if not name or name in names:
                continue
            names.add(name)
            out.append(dict(p))
    return out


def render(segments: List[Segment], values: Mapping[str, Any],
           parameters: Optional[Iterable[Mapping[str, Any]]] = None) -> str:
    """Substitute `values` into parsed `segments`.

    A placeholder marked required in `parameters` with no value raises
    DomainError. Optional or undeclared placeholders render as "".
    """
    required = {
        p.get("name") for p in (parameters or []) if p.get("required", True)
    }
    missing = []
    parts = []
    for seg in segments:
        if isinstance(seg, Literal):
            parts.append(seg.text)
            continue
        value = values.get(seg.name)
        if value is None:
            if seg.name in required:
                missing.append(seg.name)
            parts.append("")
            continue
        parts.append(value if isinstance(value, str) else str(value))
    if missing:
        raise DomainError(
            f"Missing required parameters: {', '.join(sorted(set(missing)))}",
            details=[{"field": name, "message": "required"} for name in sorted(set(missing))],
        )
    return "".join(parts)


def render_text(text: Optional[str], values: Mapping[str, Any],
                parameters: Optional[Iterable[Mapping[str, Any]]] = None) -> str:
    return render(parse_template(text), values, parameters)
