"""Tests for context path resolution and output merging."""

from __future__ import annotations

import pytest

from litestar_flows.core.context import MISSING, merge_output, resolve_path


@pytest.mark.unit
class TestResolvePath:
    """Tests for dotted path lookups."""

    def test_nested_mapping(self) -> None:
        assert resolve_path({"order": {"customer": {"id": 7}}}, "order.customer.id") == 7

    def test_sequence_index(self) -> None:
        data = {"lines": [{"sku": "A"}, {"sku": "B"}]}

        assert resolve_path(data, "lines.1.sku") == "B"
        assert resolve_path(data, "lines.-1.sku") == "B"

    def test_missing_segments(self) -> None:
        data = {"lines": [{"sku": "A"}], "total": 5}

        assert resolve_path(data, "absent") is MISSING
        assert resolve_path(data, "lines.3.sku") is MISSING
        assert resolve_path(data, "total.value") is MISSING
        assert resolve_path(data, "") is MISSING

    def test_default(self) -> None:
        assert resolve_path({}, "absent", default=None) is None

    def test_none_is_a_value(self) -> None:
        assert resolve_path({"approver": None}, "approver") is None


@pytest.mark.unit
class TestMergeOutput:
    """Tests for merging step output into the context."""

    def test_last_write_wins(self) -> None:
        assert merge_output({"a": 1, "b": 1}, {"b": 2, "c": 3}) == {"a": 1, "b": 2, "c": 3}

    def test_returns_new_dict(self) -> None:
        context = {"a": 1}
        merged = merge_output(context, {"b": 2})

        assert context == {"a": 1}
        assert merged is not context

    def test_merge_is_shallow(self) -> None:
        merged = merge_output({"order": {"id": 1, "total": 10}}, {"order": {"total": 12}})
        assert merged == {"order": {"total": 12}}

    def test_empty_output(self) -> None:
        assert merge_output({"a": 1}, None) == {"a": 1}
        assert merge_output({"a": 1}, {}) == {"a": 1}
