"""Prompt token-count estimation.

Approximates CLIP's BPE tokenizer without its vocabulary: longer words tend
to split into several tokens, weight syntax like ``(word:1.2)`` is cheap,
and the tokenizer always adds start and end tokens.
"""
import re
from dataclasses import dataclass
from enum import Enum

_TOKEN_PATTERN = re.compile(r"[\w]+|[^\s\w]")


class ModelTokenLimit(Enum):
    sd15 = ("SD 1.5", 77)
    sdxl = ("SDXL", 77)
    flux = ("Flux", 256)
    t5 = ("T5", 256)

    def __init__(self, display_name: str, limit: int):
        self.display_name = display_name
        self.limit = limit


@dataclass(frozen=True)
class EstimationResult:
    count: int
    limit: int

    @property
    def exceeds_limit(self) -> bool:
        return self.count > self.limit

    @property
    def percentage_used(self) -> int:
        if self.limit <= 0:
            return 0
        return int(self.count / self.limit * 100)

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "limit": self.limit,
            "exceeds_limit": self.exceeds_limit,
            "percentage_used": self.percentage_used,
        }


def estimate_tokens(text: str) -> int:
    """Estimated token count, including the start and end tokens."""
    if not text:
        return 2

    count = 0
    for token in _TOKEN_PATTERN.findall(text):
        if token.startswith(":") or (token[0].isdigit() and "." in token):
            # Emphasis weights are mostly stripped by the tokenizer
            count += 1
        elif token.isalpha():
            length = len(token)
            if length <= 6:
                count += 1
            elif length <= 10:
                count += 2
            else:
                count += 1 + (length - 6) // 4
        elif token.isdigit():
            count += max(1, (len(token) + 1) // 2)
        else:
            count += 1
    return count + 2


def estimate(text: str, limit: int | ModelTokenLimit = ModelTokenLimit.sd15) -> EstimationResult:
    if isinstance(limit, ModelTokenLimit):
        limit = limit.limit
    return EstimationResult(count=estimate_tokens(text), limit=limit)
