"""Fuzzy resident name matching.

Used only when no exact or structural signature match exists, to spot a
future lease whose residents were typed slightly differently ("Jon Smyth" vs
"John Smith"). Empty lists never match.
"""

from . import config
from .schemas import ResidentListMatch, ResidentNameMatch, normalize_name


def name_similarity(name_a: str, name_b: str) -> float:
    """Jaccard similarity of the character sets of two names (0.0-1.0)."""
    chars_a = set(normalize_name(name_a))
    chars_b = set(normalize_name(name_b))
    union = chars_a | chars_b
    if not union:
        return 0.0
    return len(chars_a & chars_b) / len(union)


def resident_list_match(
    names_a: list[str],
    names_b: list[str],
    threshold: float | None = None,
) -> ResidentListMatch:
    """Match every name in names_a against names_b.

    Exact normalized match first, otherwise the most similar name in names_b
    at or above the threshold. match_percentage divides by the longer list so
    extra or missing residents lower the score.
    """
    if threshold is None:
        threshold = config.NAME_SIMILARITY_THRESHOLD

    if not names_a or not names_b:
        return ResidentListMatch()

    normalized_b = {normalize_name(name): name for name in names_b}
    matches = []

    for name in names_a:
        exact = normalized_b.get(normalize_name(name))
        if exact is not None:
            matches.append(ResidentNameMatch(
                name=name, matched_name=exact, similarity=1.0, is_match=True,
            ))
            continue

        best_name, best_score = None, 0.0
        for candidate in names_b:
            score = name_similarity(name, candidate)
            if score > best_score:
                best_name, best_score = candidate, score

        is_match = best_score >= threshold
        matches.append(ResidentNameMatch(
            name=name,
            matched_name=best_name if is_match else None,
            similarity=best_score,
            is_match=is_match,
        ))

    matched = sum(1 for m in matches if m.is_match)
    return ResidentListMatch(
        match_percentage=matched / max(len(names_a), len(names_b)),
        matches=matches,
    )
