"""
Merge engine — fold a remote sync payload into the local repository.

Rules:
    - unknown ids are inserted verbatim
    - branch histories are unioned by message id (the local copy of a
      duplicate wins) and re-sorted by message timestamp
    - metadata fields come from whichever side has the later ``updatedAt``
      (``createdAt`` when absent); a differing value this drops is reported
      as a MergeConflictIgnored record
    - snapshots are insert-only
    - nothing local is ever deleted
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from convosync.models import Bind, Branch, Idea, Snapshot
from convosync.payload import validate_payload
from convosync.store import ConversationRepository

log = logging.getLogger(__name__)

PLACEHOLDER_IDEA_NAME = "Synced conversations"


@dataclass
class MergeConflictIgnored:
    """A field whose value from one side lost to last-writer-wins."""

    entity: str
    entity_id: str
    field: str
    kept: Any
    dropped: Any


@dataclass
class MergeReport:
    ideas_added: int = 0
    ideas_updated: int = 0
    branches_added: int = 0
    branches_updated: int = 0
    branches_detached: int = 0
    messages_added: int = 0
    binds_added: int = 0
    binds_updated: int = 0
    snapshots_added: int = 0
    skipped: int = 0
    conflicts: list[MergeConflictIgnored] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any((
            self.ideas_added, self.ideas_updated, self.branches_added,
            self.branches_updated, self.binds_added, self.binds_updated,
            self.snapshots_added,
        ))

    def summary(self) -> str:
        return (
            f"{self.branches_added} branch(es) added, {self.branches_updated} updated, "
            f"{self.messages_added} message(s), {self.binds_added} bind(s), "
            f"{self.snapshots_added} snapshot(s), {len(self.conflicts)} conflict(s)"
        )


def _stamp(entity: Any) -> datetime:
    return entity.updated_at or entity.created_at


class MergeEngine:
    """Applies remote records to a ConversationRepository."""

    def __init__(self, repository: ConversationRepository) -> None:
        self.repository = repository

    def import_payload(self, payload: dict) -> MergeReport:
        """Import every section of a sync payload under one change notification."""
        validate_payload(payload)
        report = MergeReport()
        with self.repository.batch():
            self.import_ideas(payload.get("ideas") or [], report)
            self.import_branches(payload["branches"], report)
            self.import_binds(payload.get("binds") or [], report)
            self.import_snapshots(payload.get("snapshots") or [], report)
        log.info("Merged remote payload: %s", report.summary())
        return report

    def _coerce(self, model: Any, records: Iterable[Any], report: MergeReport) -> list:
        out = []
        for record in records:
            if isinstance(record, model):
                out.append(record)
                continue
            try:
                out.append(model.from_dict(record))
            except (ValueError, TypeError, KeyError) as e:
                report.skipped += 1
                log.warning("Skipping malformed remote %s: %s", model.__name__.lower(), e)
        return out

    def _resolve(
        self,
        entity: str,
        local: Any,
        remote: Any,
        names: tuple[str, ...],
        report: MergeReport,
    ) -> bool:
        """Apply last-writer-wins for ``names`` onto ``local``. Returns True if it changed."""
        remote_newer = _stamp(remote) > _stamp(local)
        winner, loser = (remote, local) if remote_newer else (local, remote)
        changed = False
        for name in names:
            kept, dropped = getattr(winner, name), getattr(loser, name)
            if kept == dropped:
                continue
            if kept is None:
                kept, dropped = dropped, None
            if dropped is not None:
                conflict = MergeConflictIgnored(entity, local.id, name, kept, dropped)
                report.conflicts.append(conflict)
                log.info("Merge kept %s %s.%s=%r over %r", entity, local.id, name, kept, dropped)
            if getattr(local, name) != kept:
                setattr(local, name, kept)
                changed = True
        if remote_newer:
            local.updated_at = remote.updated_at
        return changed

    def import_ideas(self, records: Iterable[Any], report: MergeReport | None = None) -> MergeReport:
        report = report if report is not None else MergeReport()
        existing = {i.id: i for i in self.repository.list_ideas()}
        for remote in self._coerce(Idea, records, report):
            local = existing.get(remote.id)
            if local is None:
                self.repository.put_idea(remote)
                existing[remote.id] = remote
                report.ideas_added += 1
            elif self._resolve("idea", local, remote, ("name", "description", "pinned"), report):
                self.repository.put_idea(local)
                report.ideas_updated += 1
        return report

    def import_branches(self, records: Iterable[Any], report: MergeReport | None = None) -> MergeReport:
        """Insert unknown branches; union the histories of known ones."""
        report = report if report is not None else MergeReport()
        idea_ids = {i.id for i in self.repository.list_ideas()}
        existing = {b.id: b for b in self.repository.list_branches()}
        touched: list[Branch] = []

        with self.repository.batch():
            for remote in self._coerce(Branch, records, report):
                if remote.idea_id not in idea_ids:
                    placeholder = Idea(id=remote.idea_id, name=PLACEHOLDER_IDEA_NAME,
                                       created_at=remote.created_at)
                    self.repository.put_idea(placeholder)
                    idea_ids.add(placeholder.id)
                    report.ideas_added += 1
                    log.info("Created idea %s for orphan branch %s", placeholder.id, remote.id)

                local = existing.get(remote.id)
                if local is None:
                    existing[remote.id] = remote
                    touched.append(remote)
                    report.branches_added += 1
                    report.messages_added += len(remote.messages)
                    continue

                known = local.message_ids()
                fresh = [m for m in remote.messages if m.id not in known]
                changed = bool(fresh)
                if fresh:
                    local.messages = sorted(local.messages + fresh, key=lambda m: m.timestamp)
                    report.messages_added += len(fresh)
                if remote.is_merged and not local.is_merged:
                    local.is_merged = True
                    changed = True
                if self._resolve("branch", local, remote, ("name", "summary", "is_linear"), report):
                    changed = True
                if changed:
                    touched.append(local)
                    report.branches_updated += 1

            for branch in touched:
                if branch.parent_id and branch.parent_id not in existing:
                    log.warning("Branch %s references missing parent %s; detaching",
                                branch.id, branch.parent_id)
                    branch.parent_id = None
                    report.branches_detached += 1
                self.repository.put_branch(branch)
        return report

    def import_binds(self, records: Iterable[Any], report: MergeReport | None = None) -> MergeReport:
        report = report if report is not None else MergeReport()
        branch_ids = {b.id for b in self.repository.list_branches()}
        existing = {b.id: b for b in self.repository.list_binds()}
        for remote in self._coerce(Bind, records, report):
            if remote.branch_id not in branch_ids:
                report.skipped += 1
                log.warning("Skipping bind %s for unknown branch %s", remote.id, remote.branch_id)
                continue
            local = existing.get(remote.id)
            if local is None:
                self.repository.put_bind(remote)
                existing[remote.id] = remote
                report.binds_added += 1
            elif self._resolve("bind", local, remote, ("summary", "pinned", "is_locked"), report):
                self.repository.put_bind(local)
                report.binds_updated += 1
        return report

    def import_snapshots(self, records: Iterable[Any], report: MergeReport | None = None) -> MergeReport:
        """Insert snapshots whose ids are new. Existing snapshots are never touched."""
        report = report if report is not None else MergeReport()
        for remote in self._coerce(Snapshot, records, report):
            if self.repository.put_snapshot(remote):
                report.snapshots_added += 1
        return report

    def merge_selected_binds(
        self,
        bind_ids: list[str],
        target_branch_id: str,
        new_branch_name: str | None = None,
    ) -> Branch:
        """Consolidate chosen binds onto a branch (see ConversationRepository)."""
        return self.repository.merge_selected_binds(bind_ids, target_branch_id, new_branch_name)
