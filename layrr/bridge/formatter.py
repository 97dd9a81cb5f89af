"""Turn a selection instruction into the single-line prompt sent to the agent.

Layout::

    <instruction> (Selected N elements in WxH area: [sel text:"..." html:...] ... )

At most MAX_ELEMENTS descriptors are emitted; the rest collapse into a
``[+K more elements]`` token.
"""

from __future__ import annotations

import re

from .errors import FormatError
from .selection import ElementDescriptor, Instruction

MAX_ELEMENTS = 20
MAX_TEXT_CHARS = 50
MAX_HTML_CHARS = 100
ELLIPSIS = "..."

_LINE_BREAKS = re.compile(r"\r\n|\r|\n")


def single_line(text: str) -> str:
    return _LINE_BREAKS.sub(" ", text or "")


def truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + ELLIPSIS
    return text


def describe_element(element: ElementDescriptor) -> str:
    clauses: list[str] = []

    selector = single_line(element.selector).strip() or element.derived_selector()
    if selector:
        clauses.append(selector)

    inner = single_line(element.inner_text).strip()
    if inner:
        clauses.append(f'text:"{truncate(inner, MAX_TEXT_CHARS)}"')

    html = single_line(element.outer_html).strip()
    if html:
        clauses.append(f"html:{truncate(html, MAX_HTML_CHARS)}")

    return "[" + " ".join(clauses) + "]"


def format_instruction(instruction: Instruction) -> str:
    if not isinstance(instruction, Instruction):
        raise FormatError(f"expected an Instruction, got {type(instruction).__name__}")
    selection = instruction.selection
    area = selection.area

    parts: list[str] = [single_line(instruction.text)]
    parts.append(f"(Selected {selection.element_count} elements in {area.width}x{area.height} area:")

    elements = selection.elements
    for element in elements[:MAX_ELEMENTS]:
        parts.append(describe_element(element))
    if len(elements) > MAX_ELEMENTS:
        parts.append(f"[+{len(elements) - MAX_ELEMENTS} more elements]")

    parts.append(")")
    return " ".join(parts)
