"""
Extraction engine.

Turns one ExtractRule plus a parsed page into a string and stores it in the
shared variable scope. A rule either queries the page (``select``) or is a
pure substitution over variables already in scope (``template`` only).

For selector rules each matched element gets its own scope: a copy of the
outer scope plus ``index``, ``n``, ``value``/``text``, ``html``/``outerHtml``
and any ``fields`` looked up inside that element. The rule's ``template`` (if
any) is rendered against that per-element scope. Only the final, joined and
prefixed value is written back to the outer scope.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from ventricle import template as templates
from ventricle.definition import ExtractRule, FlowStep
from ventricle.dom import Document, Node, read_attribute
from ventricle.errors import MissingField, NoExtractedValue

logger = logging.getLogger("ventricle.extraction")


def _element_scope(scope: Dict[str, str], index: int, node: Node,
                   base: Optional[str]) -> Dict[str, str]:
    element = dict(scope)
    element["index"] = str(index)
    element["n"] = str(index + 1)
    if base:
        element["value"] = base
        element["text"] = base
    inner = node.inner_html()
    if inner:
        element["html"] = inner
    outer = node.outer_html()
    if outer:
        element["outerHtml"] = outer
    return element


def _resolve_fields(name: str, rule: ExtractRule, node: Node,
                    element: Dict[str, str]) -> None:
    for field_name, field_rule in rule.fields.items():
        found = node.query_self_or_descendant(field_rule.select)
        value = read_attribute(found, field_rule.attribute) if found is not None else None
        if value is None:
            if field_rule.required:
                raise MissingField(name, field_name, field_rule.select)
            continue
        element[field_name] = value


def _collect(document: Document, name: str, rule: ExtractRule,
             scope: Dict[str, str]) -> List[str]:
    """Non-blank candidate values for a rule, in document order."""
    if rule.is_template_only:
        value = templates.resolve(rule.template, scope, strict=rule.required)
        return [value] if value.strip() else []

    matches = document.query(rule.select)
    if not rule.all:
        matches = matches[:1]

    results: List[str] = []
    for index, node in enumerate(matches):
        base = read_attribute(node, rule.attribute)
        element = _element_scope(scope, index, node, base)

        if rule.fields:
            try:
                _resolve_fields(name, rule, node, element)
            except MissingField as e:
                if rule.required:
                    raise
                logger.debug(f"Skipping match {index} of optional '{name}': {e}")
                continue

        if rule.template is not None:
            value = templates.resolve(rule.template, element, strict=rule.required)
        else:
            value = base

        if not value or not value.strip():
            continue
        results.append(value)
        if not rule.all:
            break

    return results


def _finish(name: str, rule: ExtractRule, results: List[str],
            scope: Dict[str, str]) -> Optional[str]:
    if not results:
        if rule.required:
            detail = f'select "{rule.select}"' if rule.select else "template"
            raise NoExtractedValue(name, detail)
        return None

    value = rule.join_with.join(results) if rule.all else results[0]
    prefix = templates.resolve(rule.prefix, scope, strict=False) if rule.prefix else ""
    suffix = templates.resolve(rule.suffix, scope, strict=False) if rule.suffix else ""
    return f"{prefix}{value}{suffix}"


def extract_one(document: Document, rule: ExtractRule, scope: Dict[str, str],
                name: str = "value") -> Optional[str]:
    """Value from the first match (or the template), wrapped in prefix/suffix.

    Raises an ExtractionError when the rule is required and nothing usable
    was found; returns None for an optional rule in the same situation.
    """
    single = rule if not rule.all else _single(rule)
    return _finish(name, single, _collect(document, name, single, scope), scope)


def extract_all(document: Document, rule: ExtractRule, scope: Dict[str, str],
                name: str = "value") -> Optional[str]:
    """Values from every match in document order, joined with ``join_with``."""
    return _finish(name, rule, _collect(document, name, rule, scope), scope)


def _single(rule: ExtractRule) -> ExtractRule:
    return replace(rule, all=False)


def apply_rule(document: Document, name: str, rule: ExtractRule,
               scope: Dict[str, str]) -> Optional[str]:
    """Extract and store the result under ``name`` in ``scope``.

    An optional rule that yields nothing leaves ``scope`` untouched.
    """
    extract = extract_all if rule.all else extract_one
    value = extract(document, rule, scope, name)
    if value is not None:
        scope[name] = value
        logger.debug(f"Extracted '{name}' ({len(value)} chars)")
    return value


def apply_step(document: Document, step: FlowStep, scope: Dict[str, str]) -> None:
    """Run every rule of a step; selector rules first, then template-only ones."""
    ordered = sorted(step.extract.items(), key=lambda item: item[1].is_template_only)
    for name, rule in ordered:
        apply_rule(document, name, rule, scope)
