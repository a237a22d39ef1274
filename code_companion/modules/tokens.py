from __future__ import annotations

import math
from typing import Iterable, Optional


CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str]) -> int:
    # Heuristic: ~4 chars/token. Budget comparisons only, billing uses provider usage.
    return int(math.ceil(len(text or "") / CHARS_PER_TOKEN))


def estimate_total(texts: Iterable[Optional[str]]) -> int:
    return sum(estimate_tokens(t) for t in texts)
