# intelligence.py
"""Natural-language element lookup and data extraction over a live page.

Everything that talks to the model goes through :class:`PageIntelligence`.
Results are best-effort: an empty list, empty string or empty dict is a normal
answer and callers must treat it as "nothing found". Only transport failures
raise (:class:`errors.PageIntelligenceError`).
"""

from __future__ import annotations

import json
import logging
import textwrap
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Union

from openai import AsyncOpenAI

from errors import PageIntelligenceError

logger = logging.getLogger(__name__)

REF_ATTRIBUTE = "data-agent-ref"
SUPPORTED_METHODS = {"click", "fill", "check", "press", "select"}

ExtractResult = Union[str, Dict[str, Any]]


@dataclass(frozen=True)
class ObservedElement:
    description: str
    method: str = "click"
    selector: Optional[str] = None
    arguments: Tuple[str, ...] = ()


class PageIntelligence(Protocol):
    async def observe(self, instruction: str) -> List[ObservedElement]: ...

    async def extract(self, instruction: str, schema: Optional[Dict[str, str]] = None) -> ExtractResult: ...


def extract_json_object(text: str) -> dict:
    """
    Pull the first JSON object from a model response.
    """
    text = (text or "").strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        snippet = text[start : end + 1]
        try:
            data = json.loads(snippet)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}
    return {}


def matches_any(
    elements: Iterable[ObservedElement],
    terms: Iterable[str],
    *,
    exclude: Iterable[str] = (),
) -> Optional[str]:
    """Return the first element description containing one of ``terms`` (and none of ``exclude``)."""
    lowered_terms = [t.lower() for t in terms]
    lowered_exclude = [t.lower() for t in exclude]
    for element in elements:
        description = element.description.lower()
        if any(t in description for t in lowered_exclude):
            continue
        if any(t in description for t in lowered_terms):
            return element.description
    return None


# Tags every visible interactable node with a stable ref so the model can
# point at it and Playwright can act on it afterwards.
INVENTORY_SCRIPT = """
(args) => {
    const [limit, refAttr] = args;
    const selectors = [
        "button", "a[href]", "input", "textarea", "select", "label",
        "[role='button']", "[role='link']", "[role='radio']", "[role='checkbox']",
        "[role='tab']", "[role='menuitem']", "[role='option']", "[role='alert']",
        "[role='status']", "h1", "h2", "h3", "[class*='toast']", "[class*='error']"
    ];

    const computeVisibility = (el) => {
        if (!el || el.nodeType !== Node.ELEMENT_NODE) return false;
        const style = window.getComputedStyle(el);
        if (!style || style.visibility === "hidden" || style.display === "none") return false;
        if (parseFloat(style.opacity || "1") === 0) return false;
        const rect = el.getBoundingClientRect();
        if (rect.width === 0 || rect.height === 0) return false;
        return true;
    };

    const labelFor = (el) => {
        if (el.labels && el.labels.length) {
            return Array.from(el.labels).map((l) => (l.innerText || "").trim()).join(" ");
        }
        const wrapping = el.closest("label");
        return wrapping ? (wrapping.innerText || "").trim() : null;
    };

    const results = [];
    const seen = new Set();
    let counter = 0;
    for (const el of document.querySelectorAll(selectors.join(","))) {
        if (results.length >= limit) break;
        if (seen.has(el) || !computeVisibility(el)) continue;
        seen.add(el);
        counter += 1;
        const ref = String(counter);
        el.setAttribute(refAttr, ref);
        const text = (el.innerText || el.textContent || "").replace(/\\s+/g, " ").trim();
        results.push({
            ref,
            tag: el.tagName.toLowerCase(),
            role: el.getAttribute("role"),
            type: el.getAttribute("type"),
            text: text.slice(0, 200),
            label: labelFor(el),
            placeholder: el.getAttribute("placeholder"),
            ariaLabel: el.getAttribute("aria-label"),
            checked: (el.type === "radio" || el.type === "checkbox") ? el.checked : null,
            disabled: typeof el.disabled === "boolean" ? el.disabled : null
        });
    }
    return results;
}
"""


OBSERVE_PROMPT = """
    Find the page elements matching this request:
    "<<INSTRUCTION>>"

    Visible elements (one per line, each with a ref):
    <<ELEMENTS>>

    Return JSON only:
    {"elements": [{"ref": "string", "description": "short human description including the visible text",
      "method": "click | fill | check | press | select", "arguments": ["string"]}]}

    For fill actions put the text to type in "arguments".
    Include only elements that genuinely match. Return {"elements": []} when nothing matches.
    """

EXTRACT_PROMPT = """
    Read the page text below and answer this instruction:
    "<<INSTRUCTION>>"

    Return JSON only, shaped like <<SHAPE>>. Use empty strings for anything you cannot find.
    Never invent values that are not on the page.

    Page text:
    ---
    <<PAGE_TEXT>>
    ---
    """


def _format_inventory(inventory: List[Dict[str, Any]]) -> str:
    lines = []
    for item in inventory:
        parts = [f"ref={item.get('ref')}", item.get("tag") or "?"]
        for key in ("role", "type", "label", "placeholder", "ariaLabel"):
            if item.get(key):
                parts.append(f"{key}={item[key]!r}")
        if item.get("checked") is not None:
            parts.append(f"checked={item['checked']}")
        if item.get("disabled"):
            parts.append("disabled")
        if item.get("text"):
            parts.append(f"text={item['text']!r}")
        lines.append(" ".join(parts))
    return "\n".join(lines)


class OpenAIPageIntelligence:
    """Page intelligence backed by the OpenAI chat completions API."""

    def __init__(
        self,
        page,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: str = "gpt-4o-mini",
        max_elements: int = 150,
        text_limit: int = 12000,
    ):
        self.page = page
        self.client = client or AsyncOpenAI()
        self.model = model
        self.max_elements = max_elements
        self.text_limit = text_limit

    async def _inventory(self) -> List[Dict[str, Any]]:
        try:
            payload = await self.page.evaluate(INVENTORY_SCRIPT, [self.max_elements, REF_ATTRIBUTE])
        except Exception as exc:
            logger.debug("  • Inventory collection failed: %s", exc)
            return []
        return payload if isinstance(payload, list) else []

    async def _rendered_text(self) -> str:
        try:
            text = await self.page.evaluate(
                "(limit) => (document.body?.innerText || '').slice(0, limit)",
                self.text_limit,
            )
        except Exception as exc:
            logger.debug("  • Rendered text unavailable: %s", exc)
            return ""
        return text or ""

    async def _complete(self, system: str, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.1,
            )
        except Exception as exc:
            raise PageIntelligenceError(f"Page intelligence request failed: {exc}") from exc
        content = response.choices[0].message.content if response.choices else ""
        return (content or "").strip()

    async def observe(self, instruction: str) -> List[ObservedElement]:
        inventory = await self._inventory()
        if not inventory:
            return []
        prompt = (
            textwrap.dedent(OBSERVE_PROMPT)
            .strip()
            .replace("<<INSTRUCTION>>", instruction)
            .replace("<<ELEMENTS>>", _format_inventory(inventory))
        )
        reply = await self._complete(
            "You locate elements on a web page for a browser automation agent.",
            prompt,
        )
        known_refs = {str(item.get("ref")) for item in inventory}
        observed: List[ObservedElement] = []
        for raw in extract_json_object(reply).get("elements") or []:
            if not isinstance(raw, dict):
                continue
            ref = str(raw.get("ref") or "")
            if ref not in known_refs:
                continue
            method = str(raw.get("method") or "click").lower()
            if method not in SUPPORTED_METHODS:
                method = "click"
            arguments = tuple(str(a) for a in (raw.get("arguments") or []) if a is not None)
            observed.append(
                ObservedElement(
                    description=str(raw.get("description") or "").strip() or f"element {ref}",
                    method=method,
                    selector=f'[{REF_ATTRIBUTE}="{ref}"]',
                    arguments=arguments,
                )
            )
        logger.debug("  • observe(%r) -> %d element(s)", instruction, len(observed))
        return observed

    async def extract(self, instruction: str, schema: Optional[Dict[str, str]] = None) -> ExtractResult:
        text = await self._rendered_text()
        if not text.strip():
            return {} if schema else ""
        if schema:
            shape = json.dumps({key: f"<{kind}>" for key, kind in schema.items()})
        else:
            shape = '{"value": "<string>"}'
        prompt = (
            textwrap.dedent(EXTRACT_PROMPT)
            .strip()
            .replace("<<INSTRUCTION>>", instruction)
            .replace("<<SHAPE>>", shape)
            .replace("<<PAGE_TEXT>>", text)
        )
        reply = await self._complete(
            "You extract exact values from web page text for a browser automation agent.",
            prompt,
        )
        data = extract_json_object(reply)
        if schema:
            return {key: data.get(key, "") for key in schema}
        value = data.get("value", "")
        return "" if value is None else str(value).strip()
