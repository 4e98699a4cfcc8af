"""Boarding-position extraction from the check-in result page.

Strategies are tried in a fixed order and the first one that yields a value
of the expected shape (``A``-``C`` followed by one or two digits) wins:

1. ``labelled``    -- "Boarding position: B23"
2. ``group``       -- "Group B ... Position 23"
3. ``position``    -- "Position: B23"
4. ``bare_token``  -- any standalone ``B23`` token

The explicit group/position pair outranks the bare token, so a page showing
"Group A Position 5" next to an unrelated "C12" reports ``A5``.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from errors import ResultUnparseable

UNKNOWN_POSITION = "UNKNOWN"
POSITION_SHAPE = re.compile(r"^[A-C]\d{1,2}$")


@dataclass(frozen=True)
class ExtractionStrategy:
    name: str
    extract: Callable[[str], Optional[str]]


def _single_group(pattern: str) -> Callable[[str], Optional[str]]:
    compiled = re.compile(pattern, re.IGNORECASE)

    def _extract(text: str) -> Optional[str]:
        match = compiled.search(text)
        return match.group(1).upper() if match else None

    return _extract


def _group_and_position(text: str) -> Optional[str]:
    match = re.search(r"group[:\s]+([A-C])\s+position[:\s]+(\d{1,2})\b", text, re.IGNORECASE)
    if not match:
        return None
    return match.group(1).upper() + match.group(2)


def _bare_token(text: str) -> Optional[str]:
    match = re.search(r"\b([A-C]\d{1,2})\b", text)
    return match.group(1) if match else None


DEFAULT_STRATEGIES: List[ExtractionStrategy] = [
    ExtractionStrategy("labelled", _single_group(r"boarding\s+position[:\s]+\b([A-C]\d{1,2})\b")),
    ExtractionStrategy("group", _group_and_position),
    ExtractionStrategy("position", _single_group(r"position[:\s]+\b([A-C]\d{1,2})\b")),
    ExtractionStrategy("bare_token", _bare_token),
]


class BoardingPositionExtractor:
    def __init__(self, strategies: Optional[Sequence[ExtractionStrategy]] = None) -> None:
        self.strategies = list(strategies) if strategies is not None else list(DEFAULT_STRATEGIES)

    def extract(self, text: str) -> str:
        value, _ = self.extract_with_source(text)
        return value

    def extract_with_source(self, text: str) -> Tuple[str, str]:
        for strategy in self.strategies:
            value = strategy.extract(text or "")
            if value and POSITION_SHAPE.match(value):
                return value, strategy.name
        raise ResultUnparseable("Could not parse boarding position from page")
