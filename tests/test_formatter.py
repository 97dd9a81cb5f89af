from __future__ import annotations

from typing import Any

import pytest

from layrr.bridge.errors import FormatError
from layrr.bridge.formatter import MAX_ELEMENTS, format_instruction
from layrr.bridge.selection import Instruction


def _instruction(elements: list[dict[str, Any]], text: str = "make it pop", **area: Any) -> Instruction:
    msg = {
        "id": 1,
        "instruction": text,
        "area": {"x": 10, "y": 20, "width": 300, "height": 120, "elementCount": len(elements), **area},
        "elements": elements,
    }
    return Instruction.from_message(msg)


def _element(selector: str, text: str = "", html: str = "") -> dict[str, Any]:
    return {"tagName": "div", "id": "", "classes": "", "selector": selector, "innerText": text, "outerHTML": html}


def test_format_two_elements_end_to_end() -> None:
    inst = _instruction(
        [
            _element("div#card-1.card", "Card title\nPrice $10", '<div id="card-1" class="card">\n  <h2>Card title</h2>\n</div>'),
            _element("button.buy", "Buy now", '<button class="buy">Buy now</button>'),
        ],
        text="make the button purple",
    )
    out = format_instruction(inst)

    assert out.startswith("make the button purple (Selected 2 elements in 300x120 area: [div#card-1.card ")
    assert '[div#card-1.card text:"Card title Price $10" html:<div id="card-1" class="card">   <h2>Card title</h2> </div>]' in out
    assert '[button.buy text:"Buy now" html:<button class="buy">Buy now</button>]' in out
    assert out.endswith("] )")
    assert "\n" not in out


def test_format_zero_elements_has_no_descriptors() -> None:
    out = format_instruction(_instruction([]))

    assert out == "make it pop (Selected 0 elements in 300x120 area: )"
    assert "[" not in out
    assert "more elements" not in out


def test_format_caps_descriptors_and_summarizes_rest() -> None:
    elements = [_element(f"li.item-{i}") for i in range(27)]
    out = format_instruction(_instruction(elements))

    assert out.count("[li.item-") == MAX_ELEMENTS
    assert "[+7 more elements]" in out
    assert out.index("[li.item-0]") < out.index("[li.item-19]") < out.index("[+7 more elements]")
    assert "[li.item-20]" not in out
    assert out.endswith("[+7 more elements] )")


def test_format_exactly_twenty_elements_has_no_summary() -> None:
    out = format_instruction(_instruction([_element(f"p.n{i}") for i in range(20)]))

    assert out.count("[p.n") == 20
    assert "more elements" not in out


def test_inner_text_truncates_after_fifty_chars() -> None:
    fifty = "a" * 50
    fifty_one = "b" * 51

    out = format_instruction(_instruction([_element("p.x", fifty), _element("p.y", fifty_one)]))

    assert f'text:"{fifty}"]' in out
    assert f'text:"{"b" * 50}..."]' in out


def test_markup_truncates_after_hundred_chars() -> None:
    html = "<span>" + "x" * 200 + "</span>"
    out = format_instruction(_instruction([_element("span", html=html)]))

    assert f"html:{html[:100]}...]" in out


def test_text_is_trimmed_before_truncation() -> None:
    out = format_instruction(_instruction([_element("h1", "   \n  Hello  \n ")]))

    assert '[h1 text:"Hello"]' in out


def test_missing_optional_fields_only_drop_their_clause() -> None:
    inst = Instruction.from_message(
        {
            "id": 3,
            "instruction": "tweak",
            "area": {"width": 5, "height": 6},
            "elements": [{"tagName": "A", "id": "home", "classes": ["nav", "active"]}, {}],
        }
    )
    out = format_instruction(inst)

    assert out == "tweak (Selected 2 elements in 5x6 area: [a#home.nav.active] [] )"


def test_multiline_instruction_is_collapsed() -> None:
    out = format_instruction(_instruction([], text="line one\r\nline two"))

    assert out.startswith("line one line two (Selected")
    assert "\n" not in out and "\r" not in out


def test_format_is_deterministic() -> None:
    inst = _instruction([_element("div.a", "x"), _element("div.b", html="<b>")])
    assert format_instruction(inst) == format_instruction(inst)


def test_format_rejects_raw_dicts() -> None:
    with pytest.raises(FormatError):
        format_instruction({"id": 1, "instruction": "x"})  # type: ignore[arg-type]
