from __future__ import annotations

from collections.abc import Iterable, Mapping


def leveled_equal(candidate: str, target: str, separator: str) -> bool:
    """Return True if *candidate* equals *target* at some hierarchy level.

    The candidate is truncated at its rightmost *separator* until it equals the
    target or no separator is left, so ``prod.us.east`` matches ``prod.us`` but
    ``prod`` never matches ``prod.us``.  An empty separator only allows an
    exact match.
    """
    while candidate != target:
        if not separator or separator not in candidate:
            return False
        candidate = candidate[: candidate.rindex(separator)]
    return True


def select_most_specific(candidates: Iterable[str]) -> str:
    """Return the longest candidate; the first one seen wins a tie.

    Returns ``""`` for an empty input.
    """
    longest = ""
    for candidate in candidates:
        if len(candidate) > len(longest):
            longest = candidate
    return longest


def most_specific_workload(matched: Mapping[str, str]) -> str:
    """Pick the routing target among workloads that leveled-match a value.

    *matched* maps workload name to its environment value.  The deepest value
    wins, then the longest workload name, then the lexically smallest name, so
    the choice does not depend on dict ordering.
    """
    if not matched:
        return ""
    deepest = select_most_specific(sorted(matched.values()))
    names = sorted(name for name, value in matched.items() if value == deepest)
    return select_most_specific(names)
