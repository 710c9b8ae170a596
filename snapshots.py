"""Per-account usage snapshots.

Keeps the last known metric lines for every account on disk so the menu
and tray have data at startup, before the first probe result arrives.
Also converts between per-account snapshots and the per-provider output
shape, where multiple accounts are folded together with scoped labels.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from providers.base import (
    AccountRecord,
    BadgeLine,
    MetricLine,
    ProviderMeta,
    ProviderOutput,
    metric_line_from_dict,
    metric_line_to_dict,
    with_label,
)
from scoped_label import make_account_scoped_label, split_account_scoped_label

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA_KEY = "schemaVersion"
SNAPSHOT_DATA_KEY = "snapshots"
SNAPSHOT_SCHEMA_VERSION = 1

PLAN_LABEL = "Plan"
ERROR_LABEL = "Error"

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc).isoformat()


@dataclass
class AccountSnapshot:
    account_id: str
    provider_id: str
    display_name: str
    lines: list[MetricLine] = field(default_factory=list)
    icon_url: str = ""
    plan: Optional[str] = None
    updated_at: str = _EPOCH

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "accountId": self.account_id,
            "providerId": self.provider_id,
            "displayName": self.display_name,
            "lines": [metric_line_to_dict(line) for line in self.lines],
            "iconUrl": self.icon_url,
            "updatedAt": self.updated_at,
        }
        if self.plan:
            out["plan"] = self.plan
        return out


def normalize_snapshot_map(raw: Any) -> dict[str, AccountSnapshot]:
    """Decode a stored snapshot map, skipping malformed entries."""
    if not isinstance(raw, dict):
        return {}

    normalized: dict[str, AccountSnapshot] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            continue

        provider_id = value.get("providerId")
        provider_id = provider_id.strip().lower() if isinstance(provider_id, str) else ""
        if not provider_id:
            continue

        account_id = value.get("accountId")
        account_id = account_id.strip() if isinstance(account_id, str) else ""
        account_id = account_id or str(key).strip()
        if not account_id:
            continue

        raw_lines = value.get("lines")
        lines = []
        if isinstance(raw_lines, list):
            for entry in raw_lines:
                line = metric_line_from_dict(entry)
                if line is not None:
                    lines.append(line)

        display_name = value.get("displayName")
        icon_url = value.get("iconUrl")
        plan = value.get("plan")
        updated_at = value.get("updatedAt")
        normalized[account_id] = AccountSnapshot(
            account_id=account_id,
            provider_id=provider_id,
            display_name=display_name if isinstance(display_name, str) else provider_id,
            lines=lines,
            icon_url=icon_url if isinstance(icon_url, str) else "",
            plan=plan if isinstance(plan, str) else None,
            updated_at=updated_at if isinstance(updated_at, str) else _EPOCH,
        )
    return normalized


def load_account_snapshots(path: str) -> dict[str, AccountSnapshot]:
    """Load snapshots; a missing, unreadable or other-schema file yields {}."""
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to load snapshots from %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        return {}

    schema_version = data.get(SNAPSHOT_SCHEMA_KEY)
    if schema_version is not None and schema_version != SNAPSHOT_SCHEMA_VERSION:
        logger.info("Ignoring snapshots with schema version %r", schema_version)
        return {}
    return normalize_snapshot_map(data.get(SNAPSHOT_DATA_KEY))


def save_account_snapshots(snapshots: dict[str, AccountSnapshot], path: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    payload = {
        SNAPSHOT_SCHEMA_KEY: SNAPSHOT_SCHEMA_VERSION,
        SNAPSHOT_DATA_KEY: {account_id: snap.to_dict() for account_id, snap in snapshots.items()},
    }
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)


def prune_snapshots_for_accounts(
    snapshots: dict[str, AccountSnapshot],
    accounts: Iterable[AccountRecord],
) -> tuple[dict[str, AccountSnapshot], bool]:
    """Drop snapshots of accounts that no longer exist."""
    account_ids = {account.id for account in accounts}
    kept = {aid: snap for aid, snap in snapshots.items() if aid in account_ids}
    return kept, len(kept) != len(snapshots)


def _is_error_line(line: MetricLine) -> bool:
    return isinstance(line, BadgeLine) and line.label.strip() == ERROR_LABEL


def _unscoped(line: MetricLine) -> MetricLine:
    return with_label(line, split_account_scoped_label(line.label).metric_label)


def normalize_account_label(label: str, account_id: str) -> str:
    trimmed = label.strip()
    if trimmed:
        return trimmed
    short_id = account_id[:8]
    return f"Account {short_id}" if short_id else "Account"


def extract_account_snapshots_from_provider_output(
    output: ProviderOutput,
    accounts: Sequence[AccountRecord],
) -> dict[str, AccountSnapshot]:
    """Split one provider output into per-account snapshots.

    Scoped lines are grouped by account id; Plan badges become the plan and
    Error badges are dropped. If nothing is scoped and the provider has a
    single account, the whole output belongs to it.
    """
    provider_id = output.provider_id.strip().lower()
    if not provider_id:
        return {}

    provider_accounts = [a for a in accounts if a.provider_id == provider_id]
    if not provider_accounts:
        return {}
    known_ids = {a.id for a in provider_accounts}

    groups: dict[str, dict[str, Any]] = {}
    for line in output.lines:
        scoped = split_account_scoped_label(line.label)
        if not scoped.account_id or scoped.account_id not in known_ids:
            continue
        group = groups.setdefault(scoped.account_id, {"plan": None, "lines": []})

        if isinstance(line, BadgeLine) and scoped.metric_label == PLAN_LABEL:
            if line.text.strip():
                group["plan"] = line.text
            continue
        if isinstance(line, BadgeLine) and scoped.metric_label == ERROR_LABEL:
            continue
        group["lines"].append(_unscoped(line))

    updated_at = datetime.now(timezone.utc).isoformat()

    if groups:
        out = {}
        for account_id, group in groups.items():
            if not group["lines"] and not group["plan"]:
                continue
            out[account_id] = AccountSnapshot(
                account_id=account_id,
                provider_id=provider_id,
                display_name=output.display_name,
                lines=group["lines"],
                icon_url=output.icon_url,
                plan=group["plan"],
                updated_at=updated_at,
            )
        return out

    if len(provider_accounts) != 1:
        return {}

    account = provider_accounts[0]
    lines = [line for line in output.lines if not _is_error_line(line)]
    plan = output.plan.strip() if output.plan else ""
    if not lines and not plan:
        return {}
    return {
        account.id: AccountSnapshot(
            account_id=account.id,
            provider_id=provider_id,
            display_name=output.display_name,
            lines=lines,
            icon_url=output.icon_url,
            plan=plan or None,
            updated_at=updated_at,
        )
    }


def build_provider_outputs_from_snapshots(
    providers_meta: Sequence[ProviderMeta],
    accounts: Sequence[AccountRecord],
    snapshots_by_account_id: dict[str, AccountSnapshot],
) -> dict[str, ProviderOutput]:
    """Fold account snapshots back into one output per provider.

    A provider with a single account gets its lines verbatim; with several
    accounts every line is scoped with the account label and id.
    """
    meta_by_id = {meta.id: meta for meta in providers_meta}

    accounts_by_provider: dict[str, list[AccountRecord]] = {}
    for account in accounts:
        accounts_by_provider.setdefault(account.provider_id, []).append(account)
    for provider_accounts in accounts_by_provider.values():
        provider_accounts.sort(key=lambda a: (a.label.lower(), a.id))

    outputs: dict[str, ProviderOutput] = {}
    for provider_id, provider_accounts in accounts_by_provider.items():
        meta = meta_by_id.get(provider_id)
        if meta is None:
            continue

        entries = [
            (account, snapshots_by_account_id[account.id])
            for account in provider_accounts
            if account.id in snapshots_by_account_id
            and snapshots_by_account_id[account.id].provider_id == provider_id
        ]
        if not entries:
            continue

        if len(provider_accounts) == 1 and len(entries) == 1:
            snapshot = entries[0][1]
            outputs[provider_id] = ProviderOutput(
                provider_id=provider_id,
                display_name=snapshot.display_name or meta.name,
                lines=tuple(snapshot.lines),
                icon_url=snapshot.icon_url or meta.icon_url,
                plan=snapshot.plan,
            )
            continue

        lines: list[MetricLine] = []
        for account, snapshot in entries:
            account_label = normalize_account_label(account.label, account.id)
            if snapshot.plan and snapshot.plan.strip():
                lines.append(
                    BadgeLine(
                        label=make_account_scoped_label(account_label, account.id, PLAN_LABEL),
                        text=snapshot.plan,
                    )
                )
            for line in snapshot.lines:
                scoped_label = make_account_scoped_label(account_label, account.id, line.label)
                lines.append(with_label(line, scoped_label))

        if not lines:
            continue
        outputs[provider_id] = ProviderOutput(
            provider_id=provider_id,
            display_name=meta.name,
            lines=tuple(lines),
            icon_url=meta.icon_url,
        )

    return outputs
