# extraction.py
from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from errors import PageIntelligenceError

logger = logging.getLogger(__name__)

APPLICATION_ID_INSTRUCTION = (
    "Extract the Application ID, Request ID or Reference Number shown on this page. "
    "It is usually a long code of capital letters, digits and dashes."
)


AMOUNT_TOKEN = re.compile(r"(?<![\d.,])-?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?(?!\d|[.,]\d)")


def parse_amount(text) -> Decimal:
    """
    Parse a displayed money amount ("ß 1,250.00") into a Decimal.

    The text must hold exactly one distinct number; "AED 1,250 for 2 plots"
    is ambiguous and raises ``ValueError`` like text with no number at all.
    A leading minus sign is kept.
    """
    tokens = AMOUNT_TOKEN.findall(str(text or ""))
    try:
        values = [Decimal(token.replace(",", "")) for token in tokens]
    except InvalidOperation as exc:
        raise ValueError(f"Not a numeric amount: {text!r}") from exc
    if not values:
        raise ValueError(f"Not a numeric amount: {text!r}")
    if len(set(values)) > 1:
        raise ValueError(f"Ambiguous amount, several numbers in {text!r}")
    return values[0]


def _looks_like_amount(value: str) -> bool:
    try:
        parse_amount(value)
    except ValueError:
        return False
    return True


async def _ai_value(intelligence, instruction: str, key: str) -> str:
    try:
        result = await intelligence.extract(instruction, {key: "string"})
    except PageIntelligenceError as exc:
        logger.warning("⚠️ AI extraction unavailable (%s); falling back to page text.", exc)
        return ""
    if isinstance(result, dict):
        value = result.get(key)
    else:
        value = result
    return str(value or "").strip()


def search_patterns(text: str, patterns: Iterable[str], flags: int = 0) -> Optional[str]:
    for pattern in patterns:
        match = re.search(pattern, text, flags)
        if match:
            return match.group(1).strip()
    return None


async def extract_request_id(
    intelligence,
    session,
    *,
    pattern: str,
    fallbacks: Iterable[str],
) -> Optional[str]:
    """
    Ask page intelligence for the application id and validate its shape.
    When that comes back empty or malformed, scan the raw page text once
    with the fallback patterns.
    """
    candidate = await _ai_value(intelligence, APPLICATION_ID_INSTRUCTION, "applicationId")
    if candidate and re.fullmatch(pattern, candidate):
        logger.info("🆔 Application ID: %s", candidate)
        return candidate
    if candidate:
        logger.info("  • AI returned a malformed application id %r, trying page text.", candidate)
    else:
        logger.info("  • AI found no application id, trying page text.")

    text = await session.raw_text_content()
    fallback = search_patterns(text, fallbacks)
    if fallback:
        logger.info("🆔 Application ID (page text): %s", fallback)
    else:
        logger.warning("⚠️ No application id on the page.")
    return fallback


async def extract_amount(
    intelligence,
    session,
    *,
    instruction: str,
    key: str,
    pattern: str,
) -> Optional[str]:
    """AI first, then one regex pass over the page text. Returns the raw amount text."""
    candidate = await _ai_value(intelligence, instruction, key)
    if candidate and _looks_like_amount(candidate):
        return candidate
    text = await session.raw_text_content()
    fallback = search_patterns(text, [pattern], re.IGNORECASE)
    if fallback:
        logger.info("  • %s read from page text: %s", key, fallback)
        return fallback
    # Hand back whatever the AI said so the caller can report a non-numeric value.
    return candidate or None
