"""Tests for account-scoped labels."""

import pytest

from scoped_label import (
    ScopedLabel,
    get_base_metric_label,
    is_account_scoped,
    make_account_scoped_label,
    split_account_scoped_label,
)


class TestMakeScopedLabel:
    def test_format(self):
        assert make_account_scoped_label("Work", "acct-1", "Session") == "Work @@ acct-1 :: Session"

    def test_trims_parts(self):
        assert make_account_scoped_label("  Work ", " acct-1 ", " Session ") == "Work @@ acct-1 :: Session"


class TestSplitScopedLabel:
    def test_full_label(self):
        assert split_account_scoped_label("Work @@ acct-1 :: Session") == ScopedLabel("Work", "acct-1", "Session")

    def test_round_trip(self):
        label = make_account_scoped_label("Personal", "b7f3", "Weekly")
        assert split_account_scoped_label(label) == ("Personal", "b7f3", "Weekly")

    def test_unscoped_label_is_identity(self):
        assert split_account_scoped_label("Session") == ScopedLabel(None, None, "Session")

    def test_account_without_id(self):
        assert split_account_scoped_label("Work :: Session") == ScopedLabel("Work", None, "Session")

    def test_splits_on_last_outer_delimiter(self):
        result = split_account_scoped_label("A :: B @@ id :: Session")
        assert result.metric_label == "Session"
        assert result.account_id == "id"
        assert result.account_label == "A :: B"

    def test_splits_on_last_inner_delimiter(self):
        result = split_account_scoped_label("Team @@ Work @@ acct-9 :: Session")
        assert result == ScopedLabel("Team @@ Work", "acct-9", "Session")

    @pytest.mark.parametrize(
        "label",
        [
            " :: Session",
            "Work @@ acct-1 :: ",
            " @@ acct-1 :: Session",
            "Work @@  :: Session",
        ],
    )
    def test_empty_halves_are_unscoped(self, label):
        assert split_account_scoped_label(label) == ScopedLabel(None, None, label)

    def test_non_string_input(self):
        assert split_account_scoped_label(42) == ScopedLabel(None, None, "42")


class TestHelpers:
    def test_base_metric_label(self):
        assert get_base_metric_label("Work @@ acct-1 :: Session") == "Session"
        assert get_base_metric_label("Session") == "Session"

    def test_is_account_scoped(self):
        assert is_account_scoped("Work @@ acct-1 :: Session")
        assert is_account_scoped("Work :: Session")
        assert not is_account_scoped("Session")
