"""Lexical similarity over photo descriptions and tags.

Used in two places: as the semantic sub-score of every pair scored by the
pipeline, and as the caption-based fallback when the cheaper layers find
nothing at all.
"""

from __future__ import annotations

import logging
import re

from photosieve.services.batching import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_SEMANTIC_THRESHOLD = 0.7
DOMAIN_TERM_BOOST = 0.1
MAX_DOMAIN_BOOST = 0.3

_TOKEN_RE = re.compile(r"[a-z0-9]+")

STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
        "her", "was", "one", "our", "out", "his", "has", "had", "its", "who",
        "did", "get", "him", "how", "man", "new", "now", "old", "see", "two",
        "way", "this", "that", "with", "from", "have", "they", "will", "what",
        "when", "were", "there", "their", "which", "while", "been", "some",
        "into", "than", "then", "them", "these", "those", "also", "very",
        "image", "photo", "picture", "shows", "showing", "appears", "visible",
    }
)

# Construction-trade vocabulary: sharing these is a stronger signal than
# sharing generic words.
DOMAIN_TERMS: frozenset[str] = frozenset(
    {
        "roofing", "roof", "shingles", "plumbing", "pipe", "pipes",
        "electrical", "wiring", "outlet", "panel", "foundation", "concrete",
        "slab", "footing", "framing", "frame", "studs", "joists", "beam",
        "drywall", "insulation", "hvac", "duct", "ductwork", "siding",
        "window", "windows", "door", "doors", "flooring", "tile", "cabinet",
        "cabinets", "countertop", "excavation", "grading", "rebar",
        "scaffolding", "masonry", "brick", "stucco", "paint", "painting",
        "gutter", "gutters", "deck", "stairs", "trim", "waterproofing",
        "inspection", "damage", "leak", "crack",
    }
)


def tokenize(text: str | None) -> set[str]:
    """Lowercase word set with stop words and tokens of 2 chars or fewer removed."""
    if not text:
        return set()
    return {
        token
        for token in _TOKEN_RE.findall(text.lower())
        if len(token) > 2 and token not in STOP_WORDS
    }


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def description_similarity(description1: str | None, description2: str | None) -> float:
    """Jaccard of the token sets, boosted by shared domain vocabulary.

    Each shared domain term adds 0.1, up to 0.3; the result is capped at 1.0.
    """
    tokens1 = tokenize(description1)
    tokens2 = tokenize(description2)
    if not tokens1 or not tokens2:
        return 0.0

    shared_domain = (tokens1 & tokens2) & DOMAIN_TERMS
    boost = min(MAX_DOMAIN_BOOST, DOMAIN_TERM_BOOST * len(shared_domain))
    return min(1.0, jaccard(tokens1, tokens2) + boost)


def _long_words(text: str | None) -> set[str]:
    if not text:
        return set()
    return {word for word in _TOKEN_RE.findall(text.lower()) if len(word) > 3}


def semantic_similarity(
    tags1: list[str],
    tags2: list[str],
    description1: str | None,
    description2: str | None,
) -> float:
    """Pair sub-score: 70% tag overlap, 30% description word overlap."""
    tag_score = jaccard(
        {t.strip().lower() for t in tags1 if t.strip()},
        {t.strip().lower() for t in tags2 if t.strip()},
    )
    word_score = jaccard(_long_words(description1), _long_words(description2))
    return tag_score * 0.7 + word_score * 0.3


def find_description_groups(
    descriptions: list[tuple[str, str]],
    threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
    token: CancellationToken | None = None,
) -> list[tuple[list[str], list[float]]]:
    """Greedy seed grouping over ``(photo_id, description)`` pairs.

    Same seed-absorbs-later-matches rule as the fingerprint layers.
    Returns ``(photo_ids, edge_similarities)`` for groups of two or more.
    """
    groups: list[tuple[list[str], list[float]]] = []
    processed: set[str] = set()

    for i, (seed_id, seed_text) in enumerate(descriptions):
        if seed_id in processed:
            continue
        if token is not None:
            token.raise_if_cancelled()

        members = [seed_id]
        edges: list[float] = []
        processed.add(seed_id)

        for other_id, other_text in descriptions[i + 1 :]:
            if other_id in processed:
                continue
            similarity = description_similarity(seed_text, other_text)
            if similarity >= threshold:
                members.append(other_id)
                edges.append(similarity)
                processed.add(other_id)

        if len(members) > 1:
            groups.append((members, edges))

    logger.info(
        "Description grouping: %d groups from %d captions",
        len(groups),
        len(descriptions),
    )
    return groups
