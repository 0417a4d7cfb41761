"""Unit tests for the bounded keyword selection set."""

import pytest

from gap_engine.core.exceptions import LimitExceededError
from gap_engine.services.gaps.selection import SelectionSet


def _full() -> SelectionSet:
    return SelectionSet([f"keyword {i}" for i in range(10)])


def test_eleventh_keyword_is_rejected_and_set_unchanged() -> None:
    selection = _full()
    before = selection.all()

    with pytest.raises(LimitExceededError) as exc_info:
        selection.add("keyword 10")

    assert len(selection) == 10
    assert selection.all() == before
    assert exc_info.value.message == "You can select a maximum of 10 keywords"
    assert exc_info.value.details == {"limit": 10, "keyword": "keyword 10"}


def test_adding_existing_keyword_to_full_set_is_a_no_op() -> None:
    selection = _full()

    selection.add("keyword 3")

    assert len(selection) == 10


def test_order_is_preserved_and_remove_is_idempotent() -> None:
    selection = SelectionSet(["c", "a", "b"])

    selection.remove("a")
    selection.remove("missing")

    assert selection.all() == ["c", "b"]
    assert list(selection) == ["c", "b"]
    assert "c" in selection and selection.contains("b")
    assert not selection.contains("a")


def test_toggle_adds_and_removes() -> None:
    selection = SelectionSet()

    assert selection.toggle("crm") is True
    assert selection.toggle("crm") is False
    assert len(selection) == 0


def test_toggle_on_full_set_raises() -> None:
    selection = _full()

    with pytest.raises(LimitExceededError):
        selection.toggle("another")
    assert selection.toggle("keyword 0") is False


def test_retain_drops_keywords_outside_universe() -> None:
    selection = SelectionSet(["a", "b", "c"])

    removed = selection.retain({"b", "z"})

    assert removed == ["a", "c"]
    assert selection.all() == ["b"]


def test_clear_and_custom_limit() -> None:
    selection = SelectionSet(["a", "b"], limit=2)

    with pytest.raises(LimitExceededError):
        selection.add("c")
    selection.clear()
    assert len(selection) == 0


def test_dict_round_trip_truncates_to_limit() -> None:
    restored = SelectionSet.from_dict({"keywords": ["a", "b", "c"], "limit": 2})

    assert restored.all() == ["a", "b"]
    assert SelectionSet.from_dict(_full().to_dict()).all() == _full().all()


def test_restored_snapshot_cannot_raise_the_configured_limit() -> None:
    snapshot = {"keywords": [f"keyword {i}" for i in range(50)], "limit": 50}

    restored = SelectionSet.from_dict(snapshot)

    assert restored.limit == 10
    assert restored.all() == [f"keyword {i}" for i in range(10)]
    with pytest.raises(LimitExceededError):
        restored.add("keyword 50")


def test_constructor_limit_is_capped_at_configured_limit() -> None:
    assert SelectionSet(limit=50).limit == 10
