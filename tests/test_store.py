"""
Tests for ConversationRepository — CRUD, cascading deletes, merges, change
notification and on-disk persistence.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from convosync.models import Message
from convosync.store import (
    MAIN_BRANCH_NAME, PINNED_IDEA_NAME, ConversationRepository,
    ConversationStoreError, NotFoundError, summarize_messages,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _msg(msg_id: str, role: str = "user", text: str = "hello", seconds: int = 0) -> Message:
    return Message(id=msg_id, role=role, content=text, timestamp=T0 + timedelta(seconds=seconds))


def _exchange(n: int, prompt: str = "question") -> tuple[Message, Message]:
    return (
        _msg(f"u{n}", "user", f"{prompt} {n}", seconds=2 * n),
        _msg(f"a{n}", "assistant", f"answer {n}", seconds=2 * n + 1),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def repo(tmp_path):
    return ConversationRepository(root=tmp_path / "data")


@pytest.fixture
def idea_with_main(repo):
    idea = repo.create_idea("Travel plans", "Where to go")
    main = repo.get_idea_branches(idea.id)[0]
    return idea, main


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

class TestCreate:

    def test_create_idea_adds_main_branch(self, repo):
        idea = repo.create_idea("Travel plans")
        branches = repo.get_idea_branches(idea.id)
        assert len(branches) == 1
        assert branches[0].name == MAIN_BRANCH_NAME
        assert branches[0].parent_id is None
        assert repo.get_idea(idea.id).name == "Travel plans"

    def test_create_branch_unknown_idea(self, repo):
        with pytest.raises(NotFoundError):
            repo.create_branch("x", "idea-missing")

    def test_fork_copies_parent_history(self, repo, idea_with_main):
        idea, main = idea_with_main
        repo.create_bind(main.id, *_exchange(1))
        fork = repo.create_branch("Alt", idea.id, parent_id=main.id)
        assert fork.parent_id == main.id
        assert [m.id for m in fork.messages] == ["u1", "a1"]

    def test_fork_parent_from_other_idea(self, repo, idea_with_main):
        _, main = idea_with_main
        other = repo.create_idea("Other")
        with pytest.raises(ValueError):
            repo.create_branch("Alt", other.id, parent_id=main.id)

    def test_create_bind_appends_history(self, repo, idea_with_main):
        _, main = idea_with_main
        bind = repo.create_bind(main.id, *_exchange(1, "best beaches in Portugal"))
        branch = repo.get_branch(main.id)
        assert [m.id for m in branch.messages] == ["u1", "a1"]
        assert branch.summary.startswith("Discussed: best beaches")
        assert repo.get_branch_binds(main.id)[0].id == bind.id

    def test_create_bind_unknown_branch(self, repo):
        with pytest.raises(NotFoundError):
            repo.create_bind("branch-missing", *_exchange(1))

    def test_snapshot_defaults_to_branch_history(self, repo, idea_with_main):
        _, main = idea_with_main
        repo.create_bind(main.id, *_exchange(1))
        snap = repo.create_snapshot(main.id, description="before edits")
        assert [m.id for m in snap.messages] == ["u1", "a1"]
        assert repo.get_branch_snapshots(main.id)[0].description == "before edits"

    def test_pin_conversation(self, repo):
        branch = repo.pin_conversation([_msg("m1"), _msg("m2", "assistant", seconds=1)])
        idea = repo.get_idea(branch.idea_id)
        assert idea.name == PINNED_IDEA_NAME
        assert idea.pinned
        assert branch.name == MAIN_BRANCH_NAME
        assert len(repo.get_idea_branches(idea.id)) == 1
        assert [m.id for m in repo.get_branch(branch.id).messages] == ["m1", "m2"]

    def test_reads_return_copies(self, repo, idea_with_main):
        _, main = idea_with_main
        main.name = "changed locally"
        assert repo.get_branch(main.id).name == MAIN_BRANCH_NAME


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------

class TestUpdate:

    def test_rename_branch(self, repo, idea_with_main):
        _, main = idea_with_main
        repo.rename_branch(main.id, "Trunk")
        assert repo.get_branch(main.id).name == "Trunk"

    def test_update_branch_messages_regenerates_summary(self, repo, idea_with_main):
        _, main = idea_with_main
        repo.update_branch(main.id, messages=[_msg("m1", text="packing list")])
        assert repo.get_branch(main.id).summary == "Discussed: packing list..."

    def test_update_idea(self, repo, idea_with_main):
        idea, _ = idea_with_main
        before = repo.get_idea(idea.id).updated_at
        repo.update_idea(idea.id, name="Trips", pinned=True)
        after = repo.get_idea(idea.id)
        assert after.name == "Trips"
        assert after.pinned
        assert after.updated_at >= before

    def test_update_missing_idea(self, repo):
        with pytest.raises(NotFoundError):
            repo.update_idea("idea-missing", name="x")

    def test_toggle_bind_pin(self, repo, idea_with_main):
        _, main = idea_with_main
        bind = repo.create_bind(main.id, *_exchange(1))
        assert repo.toggle_bind_pin(bind.id) is True
        assert [b.id for b in repo.get_pinned_binds()] == [bind.id]
        assert repo.toggle_bind_pin(bind.id) is False
        assert repo.get_pinned_binds() == []


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

class TestDelete:

    def test_delete_branch_cascades_to_descendants(self, repo, idea_with_main):
        idea, main = idea_with_main
        child = repo.create_branch("child", idea.id, parent_id=main.id)
        grandchild = repo.create_branch("grandchild", idea.id, parent_id=child.id)
        sibling = repo.create_branch("sibling", idea.id)
        repo.create_bind(grandchild.id, *_exchange(1))
        repo.create_snapshot(child.id)

        deleted = repo.delete_branch(child.id)

        assert set(deleted) == {child.id, grandchild.id}
        assert deleted[0] == child.id
        remaining = {b.id for b in repo.get_idea_branches(idea.id)}
        assert remaining == {main.id, sibling.id}
        assert repo.list_binds() == []
        assert repo.list_snapshots() == []

    def test_delete_idea_cascades(self, repo, idea_with_main):
        idea, main = idea_with_main
        repo.create_branch("alt", idea.id, parent_id=main.id)
        repo.create_bind(main.id, *_exchange(1))
        other = repo.create_idea("Keep me")

        repo.delete_idea(idea.id)

        assert repo.get_idea(idea.id) is None
        assert [b.idea_id for b in repo.list_branches()] == [other.id]
        assert repo.list_binds() == []

    def test_delete_missing(self, repo):
        with pytest.raises(NotFoundError):
            repo.delete_branch("branch-missing")
        with pytest.raises(NotFoundError):
            repo.delete_idea("idea-missing")
        with pytest.raises(NotFoundError):
            repo.delete_bind("bind-missing")

    def test_delete_bind_removes_messages(self, repo, idea_with_main):
        _, main = idea_with_main
        first = repo.create_bind(main.id, *_exchange(1))
        repo.create_bind(main.id, *_exchange(2))
        repo.delete_bind(first.id)
        assert [m.id for m in repo.get_branch(main.id).messages] == ["u2", "a2"]

    def test_locked_bind_cannot_be_deleted(self, repo, idea_with_main):
        _, main = idea_with_main
        bind = repo.create_bind(main.id, *_exchange(1))
        bind.is_locked = True
        repo.put_bind(bind)
        with pytest.raises(ConversationStoreError, match="locked"):
            repo.delete_bind(bind.id)
        assert repo.get_bind(bind.id) is not None


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

class TestMerge:

    def test_merge_branches(self, repo, idea_with_main):
        idea, main = idea_with_main
        repo.create_bind(main.id, *_exchange(1))
        alt = repo.create_branch("Alt", idea.id, parent_id=main.id)
        repo.create_bind(alt.id, *_exchange(2))

        merged = repo.merge_branches(alt.id, main.id)

        assert merged.id.startswith("branch-merged-")
        assert merged.name == "Merged: Alt + Main"
        assert merged.parent_id == main.id
        assert merged.is_merged and not merged.is_linear
        assert merged.summary == "Merged from Alt into Main"
        # target history first, shared messages once
        assert [m.id for m in merged.messages] == ["u1", "a1", "u2", "a2"]
        # binds of both branches, one per prompt/response pair
        pairs = sorted((b.user_prompt.id, b.ai_response.id) for b in repo.get_branch_binds(merged.id))
        assert pairs == [("u1", "a1"), ("u2", "a2")]

    def test_merge_into_self(self, repo, idea_with_main):
        _, main = idea_with_main
        with pytest.raises(ValueError):
            repo.merge_branches(main.id, main.id)

    def test_merge_selected_binds_onto_target(self, repo, idea_with_main):
        idea, main = idea_with_main
        other = repo.create_branch("Other", idea.id)
        bind = repo.create_bind(other.id, *_exchange(3))

        dest = repo.merge_selected_binds([bind.id], main.id)

        assert dest.id == main.id
        assert [m.id for m in repo.get_branch(main.id).messages] == ["u3", "a3"]
        copies = repo.get_branch_binds(main.id)
        assert len(copies) == 1
        assert copies[0].id != bind.id

    def test_merge_selected_binds_new_branch(self, repo, idea_with_main):
        idea, main = idea_with_main
        repo.create_bind(main.id, *_exchange(1))
        other = repo.create_branch("Other", idea.id)
        bind = repo.create_bind(other.id, *_exchange(2))

        dest = repo.merge_selected_binds([bind.id], main.id, "Combined")

        assert dest.name == "Combined"
        assert dest.parent_id == main.id
        assert dest.is_merged
        assert [m.id for m in repo.get_branch(dest.id).messages] == ["u1", "a1", "u2", "a2"]
        # the target itself is untouched
        assert [m.id for m in repo.get_branch(main.id).messages] == ["u1", "a1"]

    def test_merge_selected_binds_twice_is_idempotent(self, repo, idea_with_main):
        idea, main = idea_with_main
        other = repo.create_branch("Other", idea.id)
        bind = repo.create_bind(other.id, *_exchange(1))
        repo.merge_selected_binds([bind.id], main.id)
        repo.merge_selected_binds([bind.id], main.id)
        assert len(repo.get_branch_binds(main.id)) == 1
        assert len(repo.get_branch(main.id).messages) == 2

    def test_merge_selected_unknown_bind(self, repo, idea_with_main):
        _, main = idea_with_main
        with pytest.raises(NotFoundError):
            repo.merge_selected_binds(["bind-missing"], main.id)


# ---------------------------------------------------------------------------
# Notification and persistence
# ---------------------------------------------------------------------------

class TestNotification:

    def test_each_mutation_notifies_once(self, repo):
        calls = []
        repo.add_listener(lambda: calls.append(1))
        idea = repo.create_idea("x")  # idea + Main branch, one notification
        assert len(calls) == 1
        repo.update_idea(idea.id, name="y")
        assert len(calls) == 2

    def test_batch_coalesces(self, repo):
        calls = []
        repo.add_listener(lambda: calls.append(1))
        with repo.batch():
            repo.create_idea("a")
            repo.create_idea("b")
            assert calls == []
        assert len(calls) == 1

    def test_batch_without_changes_is_silent(self, repo):
        calls = []
        repo.add_listener(lambda: calls.append(1))
        with repo.batch():
            repo.list_ideas()
        assert calls == []

    def test_failing_listener_does_not_break_others(self, repo):
        calls = []

        def broken():
            raise RuntimeError("boom")

        repo.add_listener(broken)
        repo.add_listener(lambda: calls.append(1))
        repo.create_idea("x")
        assert calls == [1]

    def test_remove_listener(self, repo):
        calls = []
        listener = lambda: calls.append(1)  # noqa: E731
        repo.add_listener(listener)
        repo.remove_listener(listener)
        repo.create_idea("x")
        assert calls == []


class TestPersistence:

    def test_survives_reopen(self, tmp_path):
        first = ConversationRepository(root=tmp_path)
        idea = first.create_idea("Persisted")
        main = first.get_idea_branches(idea.id)[0]
        first.create_bind(main.id, *_exchange(1))

        second = ConversationRepository(root=tmp_path)
        assert second.get_idea(idea.id).name == "Persisted"
        assert [m.id for m in second.get_branch(main.id).messages] == ["u1", "a1"]

    def test_no_temp_files_left(self, repo, tmp_path):
        repo.create_idea("x")
        leftovers = [p for p in (tmp_path / "data").iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_corrupt_table_reads_empty(self, repo, tmp_path):
        repo.create_idea("x")
        (tmp_path / "data" / "ideas.json").write_text("{not json")
        assert repo.list_ideas() == []

    def test_malformed_record_skipped(self, repo, tmp_path):
        idea = repo.create_idea("good")
        path = tmp_path / "data" / "ideas.json"
        rows = json.loads(path.read_text())
        rows["bad"] = {"id": "bad"}
        path.write_text(json.dumps(rows))
        assert [i.id for i in repo.list_ideas()] == [idea.id]


class TestSummary:

    def test_empty(self):
        assert summarize_messages([]) == "No messages yet"

    def test_user_openings_only(self):
        long_prompt = "x" * 80
        summary = summarize_messages([
            _msg("u1", text=long_prompt),
            _msg("a1", "assistant", "ignored"),
            _msg("u2", text="second"),
        ])
        assert summary == "Discussed: " + "x" * 50 + ", second..."

    def test_repository_method(self, repo):
        assert repo.generate_summary([_msg("u1", text="hello")]) == "Discussed: hello..."
