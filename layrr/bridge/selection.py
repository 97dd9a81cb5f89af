"""Selection payloads as delivered by the in-page selection script.

The injection layer sends selectors and markup already resolved; nothing here
re-derives DOM state. Parsing is tolerant of missing optional fields and strict
only about the request id and the overall envelope shape.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from .errors import TransportError


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        try:
            parsed = float(value.strip() or 0)
        except ValueError:
            return 0
        return int(parsed) if math.isfinite(parsed) else 0
    return 0


def _as_classes(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return " ".join(str(v).strip() for v in value if str(v).strip())
    return _as_str(value).strip()


@dataclass(frozen=True)
class ElementDescriptor:
    tag_name: str = ""
    element_id: str = ""
    classes: str = ""
    selector: str = ""
    inner_text: str = ""
    outer_html: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ElementDescriptor:
        return cls(
            tag_name=_as_str(data.get("tagName")),
            element_id=_as_str(data.get("id")),
            classes=_as_classes(data.get("classes")),
            selector=_as_str(data.get("selector")),
            inner_text=_as_str(data.get("innerText")),
            outer_html=_as_str(data.get("outerHTML")),
        )

    def derived_selector(self) -> str:
        """Best-effort `tag#id.class` selector for descriptors without one."""
        out = self.tag_name.strip().lower()
        if self.element_id.strip():
            out += "#" + self.element_id.strip()
        for cls in self.classes.split():
            out += "." + cls
        return out


@dataclass(frozen=True)
class SelectionArea:
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    element_count: int = 0


@dataclass(frozen=True)
class Selection:
    area: SelectionArea = field(default_factory=SelectionArea)
    elements: tuple[ElementDescriptor, ...] = ()

    @property
    def element_count(self) -> int:
        return self.area.element_count or len(self.elements)

    def summary(self) -> str:
        return f"{self.area.width}x{self.area.height} px · {self.element_count} elements"


@dataclass(frozen=True)
class Instruction:
    request_id: int
    selection: Selection
    text: str
    screenshot: str | None = None

    @classmethod
    def from_message(cls, msg: Any) -> Instruction:
        """Build an instruction from a decoded inbound wire message.

        Raises TransportError when the envelope is unusable. The error message
        never includes the payload itself (markup and screenshots can be large).
        """
        if not isinstance(msg, dict):
            raise TransportError("malformed envelope: expected a JSON object")

        req_id = request_id_of(msg)
        if req_id is None:
            raise TransportError("malformed envelope: missing integer id")

        instruction = msg.get("instruction")
        if not isinstance(instruction, str) or not instruction.strip():
            raise TransportError(f"malformed envelope: request {req_id} has no instruction text")

        raw_area = msg.get("area")
        area_dict = raw_area if isinstance(raw_area, dict) else {}

        # Elements live at the top level; older selection scripts nest them under area.
        raw_elements = msg.get("elements")
        if raw_elements is None:
            raw_elements = area_dict.get("elements")
        if raw_elements is None:
            raw_elements = []
        if not isinstance(raw_elements, list):
            raise TransportError(f"malformed envelope: request {req_id} elements must be a list")

        elements = tuple(ElementDescriptor.from_dict(el) for el in raw_elements if isinstance(el, dict))

        count = _as_int(area_dict.get("elementCount"))
        area = SelectionArea(
            x=_as_int(area_dict.get("x")),
            y=_as_int(area_dict.get("y")),
            width=_as_int(area_dict.get("width")),
            height=_as_int(area_dict.get("height")),
            element_count=count if count > 0 else len(elements),
        )

        screenshot = msg.get("screenshot")
        if not isinstance(screenshot, str) or not screenshot.strip():
            screenshot = None

        return cls(
            request_id=req_id,
            selection=Selection(area=area, elements=elements),
            text=instruction,
            screenshot=screenshot,
        )


def request_id_of(msg: Any) -> int | None:
    """Return the integer request id of an envelope, or None."""
    if not isinstance(msg, dict):
        return None
    raw = msg.get("id")
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None
