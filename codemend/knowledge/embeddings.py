"""Default embedder: signed feature hashing over lowercase word tokens.

Any object with ``embed(text) -> List[float]`` can replace it.
"""
from __future__ import annotations

import hashlib
import math
import re
from typing import List, Protocol, Sequence

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")


class Embedder(Protocol):
    def embed(self, text: str) -> List[float]:
        ...


def tokenize(text: str) -> List[str]:
    tokens = []
    for token in _TOKEN_RE.findall(text):
        # split snake_case so "bare_except" matches "bare except"
        tokens.extend(part for part in token.lower().split("_") if part)
    return tokens


class HashingEmbedder:
    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in tokenize(text):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
