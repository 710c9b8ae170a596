"""Account-scoped metric labels.

Metric lines carry no account field, so multi-account providers embed the
account in the label itself::

    "Work @@ acct-123 :: Session"

The outer delimiter separates the account part from the metric label; the
inner one separates the account display name from its id. Decoding is
best-effort and never raises.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

ACCOUNT_LABEL_DELIMITER = " :: "
ACCOUNT_META_DELIMITER = " @@ "


class ScopedLabel(NamedTuple):
    account_label: Optional[str]
    account_id: Optional[str]
    metric_label: str


def split_account_scoped_label(label: str) -> ScopedLabel:
    """Split a label into (account label, account id, metric label).

    Splits on the last outer delimiter, then on the last inner delimiter
    within the account part. Without an inner delimiter the whole account
    part is the account label and the id is None. Any empty half makes the
    label unscoped: ``(None, None, label)``.
    """
    if not isinstance(label, str):
        label = str(label)
    unscoped = ScopedLabel(None, None, label)

    index = label.rfind(ACCOUNT_LABEL_DELIMITER)
    if index < 0:
        return unscoped

    account_part = label[:index]
    metric_label = label[index + len(ACCOUNT_LABEL_DELIMITER):].strip()
    if not account_part.strip() or not metric_label:
        return unscoped

    meta_index = account_part.rfind(ACCOUNT_META_DELIMITER)
    if meta_index < 0:
        return ScopedLabel(account_part.strip(), None, metric_label)

    account_label = account_part[:meta_index].strip()
    account_id = account_part[meta_index + len(ACCOUNT_META_DELIMITER):].strip()
    if not account_label or not account_id:
        return unscoped
    return ScopedLabel(account_label, account_id, metric_label)


def make_account_scoped_label(account_label: str, account_id: str, metric_label: str) -> str:
    return (
        f"{account_label.strip()}{ACCOUNT_META_DELIMITER}"
        f"{account_id.strip()}{ACCOUNT_LABEL_DELIMITER}{metric_label.strip()}"
    )


def get_base_metric_label(label: str) -> str:
    return split_account_scoped_label(label).metric_label


def is_account_scoped(label: str) -> bool:
    return split_account_scoped_label(label).account_label is not None
