from __future__ import annotations

import pytest

from meshsplit.src.matching import leveled_equal, most_specific_workload, select_most_specific


@pytest.mark.parametrize("value", ["prod", "prod.us", "a.b.c.d", "x-y_z"])
@pytest.mark.parametrize("separator", [".", "/", "-", ""])
def test_leveled_equal_is_reflexive(value: str, separator: str) -> None:
    assert leveled_equal(value, value, separator)


def test_leveled_equal_truncates_candidate_towards_target() -> None:
    assert leveled_equal("prod.us.east.v2", "prod.us", ".")
    assert leveled_equal("a.b.c", "a.b", ".")


def test_leveled_equal_direction_matters() -> None:
    assert not leveled_equal("a.b", "a.b.c", ".")
    assert not leveled_equal("prod", "prod.us", ".")


def test_leveled_equal_does_not_match_sibling_levels() -> None:
    assert not leveled_equal("prod.eu.west", "prod.us", ".")


def test_leveled_equal_compares_whole_segments() -> None:
    assert not leveled_equal("production.us", "prod", ".")


def test_leveled_equal_with_empty_separator_is_exact_only() -> None:
    assert not leveled_equal("a.b", "a", "")


def test_leveled_equal_with_multi_character_separator() -> None:
    assert leveled_equal("team--stage--v1", "team--stage", "--")
    assert not leveled_equal("team-stage", "team", "--")


def test_leveled_equal_empty_target() -> None:
    assert leveled_equal("", "", ".")
    assert leveled_equal(".hidden", "", ".")
    assert not leveled_equal("prod.us", "", ".")


def test_select_most_specific_picks_longest() -> None:
    assert select_most_specific(["v1", "v1.2", "v1.2.3"]) == "v1.2.3"
    assert select_most_specific(["v1.2.3", "v1", "v1.2"]) == "v1.2.3"


def test_select_most_specific_keeps_first_on_tie() -> None:
    assert select_most_specific(["ab", "cd", "a"]) == "ab"


def test_select_most_specific_empty_input() -> None:
    assert select_most_specific([]) == ""


def test_most_specific_workload_prefers_deepest_value() -> None:
    matched = {"wA": "prod", "wB": "prod.canary"}

    assert most_specific_workload(matched) == "wB"


def test_most_specific_workload_breaks_ties_by_name_length_then_name() -> None:
    assert most_specific_workload({"short": "prod", "longer-name": "prod"}) == "longer-name"
    assert most_specific_workload({"web-b": "prod", "web-a": "prod"}) == "web-a"


def test_most_specific_workload_is_independent_of_insertion_order() -> None:
    forward = {"a": "p.x", "b": "p.y", "c": "p"}
    backward = dict(reversed(list(forward.items())))

    assert most_specific_workload(forward) == most_specific_workload(backward) == "a"


def test_most_specific_workload_empty() -> None:
    assert most_specific_workload({}) == ""
