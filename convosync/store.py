"""
Conversation repository — local persistence for Ideas, Branches, Binds and Snapshots.

Storage layout:
    ~/.convosync/data/ideas.json      — {idea_id: idea}
    ~/.convosync/data/branches.json   — {branch_id: branch (with message history)}
    ~/.convosync/data/binds.json      — {bind_id: bind}
    ~/.convosync/data/snapshots.json  — {snapshot_id: snapshot}

All writes are atomic (temp file + os.replace). Mutations are serialized with
a re-entrant lock and every mutation notifies the registered change
listeners; ``batch()`` coalesces the notifications of a group of mutations
into one.
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import tempfile
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from convosync.models import (
    Bind, Branch, Idea, Message, Snapshot, new_id, utcnow,
)

log = logging.getLogger(__name__)

_DEFAULT_ROOT = Path.home() / ".convosync" / "data"

_TABLES: dict[str, Any] = {
    "ideas": Idea,
    "branches": Branch,
    "binds": Bind,
    "snapshots": Snapshot,
}

MAIN_BRANCH_NAME = "Main"
PINNED_IDEA_NAME = "Pinned Conversation"
PINNED_IDEA_DESCRIPTION = "Conversation pinned from ephemeral mode"
EMPTY_SUMMARY = "No messages yet"
_SUMMARY_PREFIX_CHARS = 50

Listener = Callable[[], None]


class ConversationStoreError(Exception):
    """Error in conversation store operations."""


class NotFoundError(ConversationStoreError):
    """Referenced entity does not exist."""


def summarize_messages(messages: Iterable[Message]) -> str:
    """Short human summary of a history: the openings of each user message."""
    messages = list(messages)
    if not messages:
        return EMPTY_SUMMARY
    prompts = [m.text[:_SUMMARY_PREFIX_CHARS] for m in messages if m.role == "user"]
    return "Discussed: " + ", ".join(prompts) + "..."


def _dedupe_messages(messages: Iterable[Message]) -> list[Message]:
    """Drop repeated message ids, keeping the first occurrence."""
    seen: set[str] = set()
    out = []
    for m in messages:
        if m.id in seen:
            continue
        seen.add(m.id)
        out.append(copy.deepcopy(m))
    return out


class ConversationRepository:
    """File-backed store of the conversation tree.

    Reads return fresh objects; mutating them has no effect until they are
    written back through a repository method.

    Usage:
        repo = ConversationRepository()
        idea = repo.create_idea("Travel plans")
        branch = repo.get_idea_branches(idea.id)[0]
        repo.create_bind(branch.id, prompt, response)
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else _DEFAULT_ROOT
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._batch_depth = 0
        self._dirty = False

    # -- change notification ------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                log.exception("Change listener %r failed", listener)

    @contextlib.contextmanager
    def batch(self) -> Iterator[ConversationRepository]:
        """Group mutations so listeners are notified once, on exit."""
        self._lock.acquire()
        self._batch_depth += 1
        fire = False
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._dirty = False
                fire = True
            self._lock.release()
            if fire:
                self._notify()

    def _touch(self) -> None:
        self._dirty = True

    # -- persistence --------------------------------------------------------

    def _path(self, table: str) -> Path:
        return self.root / f"{table}.json"

    def _read_table(self, table: str) -> dict[str, dict]:
        """Read a raw table. Returns empty dict if missing or corrupt."""
        path = self._path(table)
        if not path.is_file():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Unreadable table %s: %s", path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _write_table(self, table: str, rows: dict[str, dict]) -> None:
        """Atomically write a raw table (temp + rename)."""
        self.root.mkdir(parents=True, exist_ok=True)
        data = json.dumps(rows, indent=2, sort_keys=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.root), suffix=".tmp", prefix=f".{table}_"
        )
        try:
            os.write(fd, data.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            os.replace(tmp_path, str(self._path(table)))
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _load(self, table: str) -> dict[str, Any]:
        model = _TABLES[table]
        out = {}
        for key, row in self._read_table(table).items():
            try:
                out[key] = model.from_dict(row)
            except (ValueError, TypeError) as e:
                log.warning("Skipping malformed %s record %s: %s", table, key, e)
        return out

    def _save(self, table: str, records: dict[str, Any]) -> None:
        self._write_table(table, {k: v.to_dict() for k, v in records.items()})
        self._touch()

    def _require_branch(self, branches: dict[str, Branch], branch_id: str) -> Branch:
        branch = branches.get(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch not found: {branch_id}")
        return branch

    # -- create -------------------------------------------------------------

    def create_idea(self, name: str, description: str = "", pinned: bool = False) -> Idea:
        """Create an Idea together with its ``Main`` branch."""
        with self.batch():
            now = utcnow()
            idea = Idea(id=new_id("idea"), name=name, description=description,
                        created_at=now, pinned=pinned)
            ideas = self._load("ideas")
            ideas[idea.id] = idea
            self._save("ideas", ideas)
            self.create_branch(MAIN_BRANCH_NAME, idea.id)
        log.info("Created idea %s (%s)", idea.id, name)
        return idea

    def pin_conversation(self, messages: list[Message], name: str = PINNED_IDEA_NAME) -> Branch:
        """Persist an ephemeral conversation as a new pinned Idea. Returns its branch."""
        with self.batch():
            idea = Idea(id=new_id("idea"), name=name,
                        description=PINNED_IDEA_DESCRIPTION, pinned=True)
            ideas = self._load("ideas")
            ideas[idea.id] = idea
            self._save("ideas", ideas)
            return self.create_branch(MAIN_BRANCH_NAME, idea.id, messages=messages)

    def create_branch(
        self,
        name: str,
        idea_id: str,
        parent_id: str | None = None,
        messages: list[Message] | None = None,
    ) -> Branch:
        """Create a branch. A fork copies its parent's history unless ``messages`` is given."""
        with self.batch():
            if self.get_idea(idea_id) is None:
                raise NotFoundError(f"Idea not found: {idea_id}")
            branches = self._load("branches")
            if parent_id is not None:
                parent = self._require_branch(branches, parent_id)
                if parent.idea_id != idea_id:
                    raise ValueError(
                        f"Parent branch {parent_id} belongs to idea {parent.idea_id}, not {idea_id}"
                    )
                if messages is None:
                    messages = parent.messages
            history = _dedupe_messages(messages or [])
            branch = Branch(
                id=new_id("branch"),
                idea_id=idea_id,
                name=name,
                parent_id=parent_id,
                summary=summarize_messages(history) if history else None,
                messages=history,
            )
            branches[branch.id] = branch
            self._save("branches", branches)
        return branch

    def create_bind(
        self,
        branch_id: str,
        user_prompt: Message,
        ai_response: Message,
        summary: str = "",
    ) -> Bind:
        """Record a completed exchange and append it to the branch history."""
        with self.batch():
            branches = self._load("branches")
            branch = self._require_branch(branches, branch_id)
            bind = Bind(
                id=new_id("bind"),
                branch_id=branch_id,
                user_prompt=copy.deepcopy(user_prompt),
                ai_response=copy.deepcopy(ai_response),
                summary=summary,
            )
            known = branch.message_ids()
            for m in (bind.user_prompt, bind.ai_response):
                if m.id not in known:
                    branch.messages.append(copy.deepcopy(m))
            branch.summary = summarize_messages(branch.messages)
            branch.updated_at = bind.created_at

            binds = self._load("binds")
            binds[bind.id] = bind
            self._save("binds", binds)
            self._save("branches", branches)
        return bind

    def create_snapshot(
        self,
        branch_id: str,
        messages: list[Message] | None = None,
        description: str | None = None,
    ) -> Snapshot:
        """Checkpoint a history. Defaults to the branch's current messages."""
        with self.batch():
            branch = self._require_branch(self._load("branches"), branch_id)
            source = branch.messages if messages is None else messages
            snapshot = Snapshot(
                id=new_id("snapshot"),
                branch_id=branch_id,
                messages=tuple(copy.deepcopy(m) for m in source),
                timestamp=utcnow(),
                description=description,
            )
            snapshots = self._load("snapshots")
            snapshots[snapshot.id] = snapshot
            self._save("snapshots", snapshots)
        return snapshot

    # -- read ---------------------------------------------------------------

    def get_idea(self, idea_id: str) -> Idea | None:
        return self._load("ideas").get(idea_id)

    def get_branch(self, branch_id: str) -> Branch | None:
        return self._load("branches").get(branch_id)

    def get_bind(self, bind_id: str) -> Bind | None:
        return self._load("binds").get(bind_id)

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        return self._load("snapshots").get(snapshot_id)

    def list_ideas(self) -> list[Idea]:
        return sorted(self._load("ideas").values(), key=lambda i: i.created_at)

    def list_branches(self) -> list[Branch]:
        return sorted(self._load("branches").values(), key=lambda b: b.created_at)

    def list_binds(self) -> list[Bind]:
        return sorted(self._load("binds").values(), key=lambda b: b.created_at)

    def list_snapshots(self) -> list[Snapshot]:
        return sorted(self._load("snapshots").values(), key=lambda s: s.timestamp)

    def get_idea_branches(self, idea_id: str) -> list[Branch]:
        return [b for b in self.list_branches() if b.idea_id == idea_id]

    def get_branch_binds(self, branch_id: str) -> list[Bind]:
        return [b for b in self.list_binds() if b.branch_id == branch_id]

    def get_branch_snapshots(self, branch_id: str) -> list[Snapshot]:
        return [s for s in self.list_snapshots() if s.branch_id == branch_id]

    def get_pinned_binds(self) -> list[Bind]:
        return [b for b in self.list_binds() if b.pinned]

    def generate_summary(self, messages: Iterable[Message]) -> str:
        return summarize_messages(messages)

    # -- update -------------------------------------------------------------

    def update_idea(
        self,
        idea_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        pinned: bool | None = None,
    ) -> Idea:
        with self.batch():
            ideas = self._load("ideas")
            idea = ideas.get(idea_id)
            if idea is None:
                raise NotFoundError(f"Idea not found: {idea_id}")
            if name is not None:
                idea.name = name
            if description is not None:
                idea.description = description
            if pinned is not None:
                idea.pinned = pinned
            idea.updated_at = utcnow()
            self._save("ideas", ideas)
        return idea

    def update_branch(
        self,
        branch_id: str,
        *,
        messages: list[Message] | None = None,
        name: str | None = None,
        summary: str | None = None,
        is_linear: bool | None = None,
    ) -> Branch:
        """Replace fields of a branch. New messages regenerate the summary unless one is given."""
        with self.batch():
            branches = self._load("branches")
            branch = self._require_branch(branches, branch_id)
            if messages is not None:
                branch.messages = _dedupe_messages(messages)
                if summary is None:
                    branch.summary = summarize_messages(branch.messages)
            if name is not None:
                branch.name = name
            if summary is not None:
                branch.summary = summary
            if is_linear is not None:
                branch.is_linear = is_linear
            branch.updated_at = utcnow()
            self._save("branches", branches)
        return branch

    def rename_branch(self, branch_id: str, name: str) -> Branch:
        return self.update_branch(branch_id, name=name)

    def toggle_bind_pin(self, bind_id: str) -> bool:
        """Flip a bind's pinned flag. Returns the new value."""
        with self.batch():
            binds = self._load("binds")
            bind = binds.get(bind_id)
            if bind is None:
                raise NotFoundError(f"Bind not found: {bind_id}")
            bind.pinned = not bind.pinned
            bind.updated_at = utcnow()
            self._save("binds", binds)
        return bind.pinned

    # -- delete -------------------------------------------------------------

    def _drop_branches(self, doomed: set[str]) -> None:
        branches = self._load("branches")
        for branch_id in doomed:
            branches.pop(branch_id, None)
        self._save("branches", branches)

        binds = self._load("binds")
        self._save("binds", {k: b for k, b in binds.items() if b.branch_id not in doomed})

        snapshots = self._load("snapshots")
        self._save("snapshots", {k: s for k, s in snapshots.items() if s.branch_id not in doomed})

    def delete_branch(self, branch_id: str) -> list[str]:
        """Delete a branch, its descendants and their binds and snapshots.

        Returns the ids of the deleted branches.
        """
        with self.batch():
            branches = self._load("branches")
            self._require_branch(branches, branch_id)
            children: dict[str, list[str]] = {}
            for b in branches.values():
                if b.parent_id:
                    children.setdefault(b.parent_id, []).append(b.id)

            doomed: list[str] = []
            queue = deque([branch_id])
            while queue:
                current = queue.popleft()
                if current in doomed:
                    continue
                doomed.append(current)
                queue.extend(children.get(current, []))
            self._drop_branches(set(doomed))
        log.info("Deleted %d branch(es) under %s", len(doomed), branch_id)
        return doomed

    def delete_idea(self, idea_id: str) -> None:
        """Delete an Idea and everything beneath it."""
        with self.batch():
            ideas = self._load("ideas")
            if ideas.pop(idea_id, None) is None:
                raise NotFoundError(f"Idea not found: {idea_id}")
            doomed = {b.id for b in self._load("branches").values() if b.idea_id == idea_id}
            self._drop_branches(doomed)
            self._save("ideas", ideas)
        log.info("Deleted idea %s with %d branch(es)", idea_id, len(doomed))

    def delete_bind(self, bind_id: str) -> None:
        """Delete a bind and remove its two messages from the branch history."""
        with self.batch():
            binds = self._load("binds")
            bind = binds.get(bind_id)
            if bind is None:
                raise NotFoundError(f"Bind not found: {bind_id}")
            if bind.is_locked:
                raise ConversationStoreError(f"Bind is locked: {bind_id}")
            del binds[bind_id]

            branches = self._load("branches")
            branch = branches.get(bind.branch_id)
            if branch is not None:
                gone = {bind.user_prompt.id, bind.ai_response.id}
                branch.messages = [m for m in branch.messages if m.id not in gone]
                branch.summary = summarize_messages(branch.messages)
                branch.updated_at = utcnow()
                self._save("branches", branches)
            self._save("binds", binds)

    # -- merge --------------------------------------------------------------

    def _copy_binds_into(self, source: Iterable[Bind], branch: Branch, binds: dict[str, Bind]) -> None:
        known_pairs = {
            (b.user_prompt.id, b.ai_response.id)
            for b in binds.values() if b.branch_id == branch.id
        }
        known_ids = branch.message_ids()
        for bind in source:
            pair = (bind.user_prompt.id, bind.ai_response.id)
            if pair in known_pairs:
                continue
            known_pairs.add(pair)
            clone = copy.deepcopy(bind)
            clone.id = new_id("bind")
            clone.branch_id = branch.id
            clone.is_locked = False
            binds[clone.id] = clone
            for m in (clone.user_prompt, clone.ai_response):
                if m.id not in known_ids:
                    known_ids.add(m.id)
                    branch.messages.append(copy.deepcopy(m))

    def merge_branches(self, source_id: str, target_id: str) -> Branch:
        """Combine two branches into a new child of ``target_id``.

        History is the target's followed by the source's; a message id
        already present is kept once. Binds of both branches are copied.
        """
        if source_id == target_id:
            raise ValueError("Cannot merge a branch into itself")
        with self.batch():
            branches = self._load("branches")
            source = self._require_branch(branches, source_id)
            target = self._require_branch(branches, target_id)

            history = _dedupe_messages(target.messages + source.messages)
            merged = Branch(
                id=new_id("branch-merged"),
                idea_id=target.idea_id,
                name=f"Merged: {source.name} + {target.name}",
                parent_id=target.id,
                is_merged=True,
                is_linear=False,
                summary=f"Merged from {source.name} into {target.name}",
                messages=history,
            )
            binds = self._load("binds")
            self._copy_binds_into(
                [b for b in sorted(binds.values(), key=lambda b: b.created_at)
                 if b.branch_id in (target_id, source_id)],
                merged, binds,
            )
            branches[merged.id] = merged
            self._save("branches", branches)
            self._save("binds", binds)
        log.info("Merged branch %s into %s as %s", source_id, target_id, merged.id)
        return merged

    def merge_selected_binds(
        self,
        bind_ids: list[str],
        target_branch_id: str,
        new_branch_name: str | None = None,
    ) -> Branch:
        """Copy chosen binds, from any branches, onto a branch.

        With ``new_branch_name`` the binds go onto a new merged child of the
        target (which starts from the target's history). Binds are applied in
        creation order. Returns the branch that received them.
        """
        with self.batch():
            binds = self._load("binds")
            chosen = []
            for bind_id in bind_ids:
                bind = binds.get(bind_id)
                if bind is None:
                    raise NotFoundError(f"Bind not found: {bind_id}")
                chosen.append(bind)
            chosen.sort(key=lambda b: b.created_at)

            branches = self._load("branches")
            target = self._require_branch(branches, target_branch_id)
            if new_branch_name:
                dest = Branch(
                    id=new_id("branch"),
                    idea_id=target.idea_id,
                    name=new_branch_name,
                    parent_id=target.id,
                    is_merged=True,
                    is_linear=False,
                    messages=_dedupe_messages(target.messages),
                )
                branches[dest.id] = dest
            else:
                dest = target

            self._copy_binds_into(chosen, dest, binds)
            dest.summary = summarize_messages(dest.messages)
            dest.updated_at = utcnow()
            self._save("branches", branches)
            self._save("binds", binds)
        return dest

    # -- raw upserts (used by the merge engine) -----------------------------

    def put_idea(self, idea: Idea) -> None:
        with self.batch():
            ideas = self._load("ideas")
            ideas[idea.id] = copy.deepcopy(idea)
            self._save("ideas", ideas)

    def put_branch(self, branch: Branch) -> None:
        with self.batch():
            branches = self._load("branches")
            branches[branch.id] = copy.deepcopy(branch)
            self._save("branches", branches)

    def put_bind(self, bind: Bind) -> None:
        with self.batch():
            binds = self._load("binds")
            binds[bind.id] = copy.deepcopy(bind)
            self._save("binds", binds)

    def put_snapshot(self, snapshot: Snapshot) -> bool:
        """Insert a snapshot if its id is new. Returns False when it already exists."""
        with self.batch():
            snapshots = self._load("snapshots")
            if snapshot.id in snapshots:
                return False
            snapshots[snapshot.id] = snapshot
            self._save("snapshots", snapshots)
        return True
