"""
Anchor lookup and flow executor.

resolve_anchor() is the cheap "did anything change?" check: one fetch, one
selector. run_flow() is the full pipeline, only run once the anchor moved.
Steps run strictly one after another because each step's URL may depend on
variables extracted by the steps before it.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol

from ventricle import template as templates
from ventricle.definition import PulseDefinition, normalize_url
from ventricle.dom import Document, read_attribute
from ventricle.extraction import apply_step

logger = logging.getLogger("ventricle.flow")


class Fetcher(Protocol):
    async def fetch(self, url: str) -> str: ...


@dataclass
class FlowResult:
    variables: Dict[str, str] = field(default_factory=dict)
    visited_urls: List[str] = field(default_factory=list)


async def resolve_anchor(definition: PulseDefinition, fetcher: Fetcher,
                         scope: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Fetch the anchor page and read the first node matching ``anchor.select``.

    Returns None when nothing matches or the matched value is empty. The flow
    is never touched here.
    """
    anchor = definition.anchor
    url = normalize_url(templates.resolve(anchor.url, scope or {}, strict=True))
    document = Document.parse(await fetcher.fetch(url))

    node = document.first(anchor.select)
    if node is None:
        logger.debug(f"[{definition.id}] anchor selector '{anchor.select}' matched nothing")
        return None
    return read_attribute(node, anchor.attribute)


async def run_flow(definition: PulseDefinition, fetcher: Fetcher,
                   seed_scope: Optional[Mapping[str, str]] = None) -> FlowResult:
    """Run every fetch step in ``step`` order against a growing scope.

    A required extraction failure aborts the run and propagates; optional
    rules that find nothing simply leave their variable unset.
    """
    result = FlowResult(variables=dict(seed_scope or {}))

    for step in definition.ordered_steps():
        url = normalize_url(templates.resolve(step.url, result.variables, strict=True))
        html = await fetcher.fetch(url)
        result.visited_urls.append(url)

        apply_step(Document.parse(html), step, result.variables)
        logger.debug(f"[{definition.id}] step {step.step} done: {url}")

    return result
