"""Inspection of streamed agent output.

Two things are read out of what the agent prints: signs that the run hit a
wall needing a human (login, second factor, captcha, outright block), and
``TASK_STATE: {json}`` lines carrying data to merge into the task state.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class BlockType(str, Enum):
    LOGIN = "login"
    TWO_FACTOR = "2fa"
    CAPTCHA = "captcha"
    BLOCKED = "blocked"


BLOCK_HINTS = {
    BlockType.LOGIN: "Sign in to the site in the browser, then run the task again.",
    BlockType.TWO_FACTOR: "Enter the verification code in the browser, then run the task again.",
    BlockType.CAPTCHA: "Solve the verification challenge in the browser, then run the task again.",
    BlockType.BLOCKED: "The site refused access. Check the page in the browser before retrying.",
}

# Checked in order; the first match wins.
BLOCK_PATTERNS: list[tuple[BlockType, re.Pattern[str]]] = [
    (
        BlockType.CAPTCHA,
        re.compile(r"\b(?:re|h)?captcha\b|verify you are (?:a )?human|are you a robot", re.I),
    ),
    (
        BlockType.TWO_FACTOR,
        re.compile(
            r"two[- ]factor|\b2fa\b|verification code|authenticator app"
            r"|security code|one[- ]time (?:password|code)|\botp\b",
            re.I,
        ),
    ),
    (
        BlockType.LOGIN,
        re.compile(
            r"log(?:in|-in)? required|sign[- ]in required|please (?:log|sign) in"
            r"|session (?:has )?expired",
            re.I,
        ),
    ),
    (
        BlockType.BLOCKED,
        re.compile(r"access (?:is )?denied|\b(?:you have been|you are|request) blocked\b", re.I),
    ),
]

STATE_MARKER = "TASK_STATE:"


@dataclass(frozen=True)
class BlockInfo:
    type: BlockType
    message: str
    detail: str

    @property
    def hint(self) -> str:
        return BLOCK_HINTS[self.type]


def detect_block(text: str) -> BlockInfo | None:
    """Return the first blocking condition mentioned in ``text``, if any."""
    for block_type, pattern in BLOCK_PATTERNS:
        match = pattern.search(text)
        if match:
            line_start = text.rfind("\n", 0, match.start()) + 1
            line_end = text.find("\n", match.end())
            detail = text[line_start : line_end if line_end != -1 else len(text)].strip()
            return BlockInfo(
                type=block_type,
                message=f"Run blocked: {block_type.value} ({match.group(0)})",
                detail=detail,
            )
    return None


def extract_state_updates(text: str) -> dict[str, Any]:
    """Collect ``TASK_STATE: {json}`` lines into one update mapping.

    Later lines win per key, except list values which are concatenated so a
    run can report samples across several lines.
    """
    updates: dict[str, Any] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith(STATE_MARKER):
            continue
        payload = line[len(STATE_MARKER):].strip()
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning(f"Ignoring malformed state line: {payload[:80]}")
            continue
        if not isinstance(data, dict):
            logger.warning("Ignoring state line that is not a JSON object")
            continue
        for key, value in data.items():
            current = updates.get(key)
            if isinstance(current, list) and isinstance(value, list):
                updates[key] = current + value
            else:
                updates[key] = value
    return updates
