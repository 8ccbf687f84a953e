"""
Template resolver for ``{{ name }}`` placeholders.

Names may contain letters, digits, ``_``, ``.`` and ``-``; whitespace inside
the braces is ignored. Resolution is side-effect free.
"""

import re
from typing import List, Mapping

from ventricle.errors import MissingVariables

VARIABLE_PATTERN = re.compile(r"{{\s*([a-zA-Z0-9_.-]+)\s*}}")


def placeholders(template: str) -> List[str]:
    """Names referenced by a template, in order of first appearance."""
    seen: List[str] = []
    for match in VARIABLE_PATTERN.finditer(template):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def resolve(template: str, scope: Mapping[str, str], strict: bool = True) -> str:
    """Substitute placeholders from ``scope``.

    Unknown names become the empty string. With ``strict`` set, any unknown
    name raises MissingVariables listing every unresolved key instead.
    """
    missing: List[str] = []

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        value = scope.get(key)
        if value is None:
            if key not in missing:
                missing.append(key)
            return ""
        return value

    resolved = VARIABLE_PATTERN.sub(_replace, template)
    if strict and missing:
        raise MissingVariables(missing)
    return resolved
