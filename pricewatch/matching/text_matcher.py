"""Text normalization and token-overlap scoring for product descriptions.

Pure functions only: nothing here performs I/O, so the same inputs always
produce the same scores.
"""

import re
import unicodedata
from typing import Callable, Iterable, Sequence, TypeVar

T = TypeVar("T")

# Weight given to coverage of the source tokens; the rest goes to Jaccard
COVERAGE_WEIGHT = 0.7
JACCARD_WEIGHT = 0.3

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_text(value: str | None) -> str:
    """Lowercase, strip diacritics and collapse non-alphanumeric runs to a space."""
    if not value:
        return ""

    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped.lower()).strip()


def tokenize(value: str | None) -> set[str]:
    """Normalized tokens longer than one character."""
    return {token for token in normalize_text(value).split(" ") if len(token) > 1}


def build_search_query(description: str | None, max_tokens: int = 6) -> str:
    """Short search query built from a product description.

    Tokens keep their original order; duplicates are dropped.
    """
    tokens: list[str] = []
    for token in normalize_text(description).split(" "):
        if len(token) <= 1 or token in tokens:
            continue
        tokens.append(token)
        if len(tokens) >= max_tokens:
            break
    return " ".join(tokens)


def score_tokens(source: set[str], candidate: set[str]) -> float:
    """Coverage-weighted Jaccard of two token sets."""
    if not source or not candidate:
        return 0.0

    common = len(source & candidate)
    if common == 0:
        return 0.0

    coverage = common / len(source)
    jaccard = common / len(source | candidate)
    return COVERAGE_WEIGHT * coverage + JACCARD_WEIGHT * jaccard


def score(source: str | None, candidate: str | None) -> float:
    """Score a candidate text against a source description."""
    return score_tokens(tokenize(source), tokenize(candidate))


def rank_candidates(
    description: str | None,
    candidates: Sequence[T],
    text_of: Callable[[T], str | None],
) -> list[tuple[T, float]]:
    """Candidates paired with their score, best first.

    The sort is stable, so equal scores keep the order the source returned.
    """
    source = tokenize(description)
    scored = [(candidate, score_tokens(source, tokenize(text_of(candidate)))) for candidate in candidates]
    return sorted(scored, key=lambda pair: pair[1], reverse=True)


def filter_by_brand(
    brand: str | None,
    candidates: Iterable[T],
    brand_of: Callable[[T], str | None],
) -> list[T]:
    """Candidates whose brand normalizes to the given brand."""
    target = normalize_text(brand)
    if not target:
        return list(candidates)
    return [c for c in candidates if normalize_text(brand_of(c)) == target]
