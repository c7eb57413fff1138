import json
import shutil
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from toppicks.errors import ConcurrentReplacementError, StorageUnavailableError
from toppicks.scoring import ScoringWeights
from toppicks.storage import (
    ANY_EPOCH,
    InMemoryTopPicksStore,
    JsonFileTopPicksStore,
    create_store_from_config,
)


def _ids(entries):
    return [e.candidate_id for e in entries]


def test_get_active_without_epoch_is_empty(store):
    assert store.get_active("nobody") == []
    assert store.current_epoch_id("nobody") is None
    assert store.count_unseen("nobody") == 0


def test_replace_publishes_entries_in_rank_order(store, make_entries, weights):
    entries = make_entries(["c1", "c2", "c3"])

    epoch = store.replace_active_epoch("subject", list(reversed(entries)), weights)
    active = store.get_active("subject")

    assert store.current_epoch_id("subject") == epoch.epoch_id
    assert _ids(active) == _ids(entries)
    assert [e.rank for e in active] == [1, 2, 3]
    assert all(e.active and e.epoch_id == epoch.epoch_id for e in active)
    assert [e.compatibility_score for e in active] == [e.compatibility_score for e in entries]
    assert epoch.algorithm_version == weights.version


def test_get_active_respects_limit(store, make_entries, weights):
    store.replace_active_epoch("subject", make_entries(["c1", "c2", "c3"]), weights)

    assert [e.rank for e in store.get_active("subject", limit=2)] == [1, 2]


def test_mark_seen_is_idempotent(store, make_entries, weights, as_of):
    store.replace_active_epoch("subject", make_entries(["c1", "c2"]), weights)

    first = store.mark_seen("subject", "c2", now=as_of)
    second = store.mark_seen("subject", "c2", now=as_of + timedelta(hours=3))

    assert first.seen and second.seen
    assert first.seen_at == second.seen_at == as_of
    active = {e.candidate_id: e for e in store.get_active("subject")}
    assert active["c2"].seen_at == as_of
    assert active["c1"].seen is False


def test_mark_seen_unknown_candidate_is_noop(store, make_entries, weights):
    assert store.mark_seen("subject", "c1") is None

    store.replace_active_epoch("subject", make_entries(["c1"]), weights)

    assert store.mark_seen("subject", "ghost") is None
    assert store.count_unseen("subject") == 1


def test_mark_all_seen_and_count_unseen(store, make_entries, weights, as_of):
    store.replace_active_epoch("subject", make_entries(["c1", "c2", "c3"]), weights)

    marked = store.mark_all_seen("subject", limit=2, now=as_of)

    assert _ids(marked) == _ids(store.get_active("subject"))[:2]
    assert store.count_unseen("subject") == 1


def test_replacement_supersedes_previous_epoch(store, make_entries, weights, as_of):
    first = store.replace_active_epoch("subject", make_entries(["c1", "c2"]), weights)
    store.mark_seen("subject", "c1", now=as_of)

    second = store.replace_active_epoch(
        "subject", make_entries(["c3", "c4", "c5"]), weights, expected_epoch_id=first.epoch_id
    )

    assert store.current_epoch_id("subject") == second.epoch_id
    assert sorted(_ids(store.get_active("subject"))) == ["c3", "c4", "c5"]
    assert store.count_unseen("subject") == 3

    history = store.get_history("subject")
    assert [h.epoch_id for h in history] == [first.epoch_id]
    assert sorted(_ids(history[0].entries)) == ["c1", "c2"]
    assert all(not e.active for e in history[0].entries)
    seen = {e.candidate_id: e.seen for e in history[0].entries}
    assert seen == {"c1": True, "c2": False}


def test_failed_pointer_swap_keeps_previous_epoch(store, make_entries, weights, monkeypatch):
    before = store.replace_active_epoch("subject", make_entries(["c1", "c2", "c3"]), weights)
    snapshot = [e.to_dict() for e in store.get_active("subject")]

    def unavailable(subject_id, pointer):
        raise StorageUnavailableError("storage went away")

    monkeypatch.setattr(store, "_write_pointer", unavailable)

    with pytest.raises(StorageUnavailableError):
        store.replace_active_epoch("subject", make_entries(["c7", "c8"]), weights)

    assert store.current_epoch_id("subject") == before.epoch_id
    assert [e.to_dict() for e in store.get_active("subject")] == snapshot


def test_failure_mid_epoch_write_exposes_nothing(store, make_entries, weights, monkeypatch):
    store.replace_active_epoch("subject", make_entries(["c1", "c2", "c3"]), weights)
    snapshot = [e.to_dict() for e in store.get_active("subject")]
    original_write = store._write_epoch

    def partial_write(epoch):
        # Persist half of the new epoch, then fail
        original_write(replace(epoch, entries=epoch.entries[:1]))
        raise StorageUnavailableError("disk full")

    monkeypatch.setattr(store, "_write_epoch", partial_write)

    with pytest.raises(StorageUnavailableError):
        store.replace_active_epoch("subject", make_entries(["c4", "c5", "c6"]), weights)

    assert [e.to_dict() for e in store.get_active("subject")] == snapshot
    assert store.get_history("subject") == []


def test_concurrent_replacements_have_one_winner(store, make_entries, weights):
    batches = {"t1": make_entries(["a1", "a2"]), "t2": make_entries(["b1", "b2", "b3"])}
    barrier = threading.Barrier(2)
    outcomes = {}

    def attempt(name):
        expected = store.current_epoch_id("subject")
        barrier.wait()
        try:
            store.replace_active_epoch("subject", batches[name], weights, expected_epoch_id=expected)
            outcomes[name] = "ok"
        except ConcurrentReplacementError:
            outcomes[name] = "lost"

    threads = [threading.Thread(target=attempt, args=(name,)) for name in batches]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes.values()) == ["lost", "ok"]
    winner = next(name for name, result in outcomes.items() if result == "ok")
    assert sorted(_ids(store.get_active("subject"))) == sorted(_ids(batches[winner]))
    assert len(store.get_history("subject")) == 0


def test_replacement_in_flight_is_rejected(store, make_entries, weights):
    lock = store._lock_for(store._replace_locks, "subject")
    lock.acquire()
    try:
        with pytest.raises(ConcurrentReplacementError):
            store.replace_active_epoch("subject", make_entries(["c1"]), weights)
    finally:
        lock.release()

    store.replace_active_epoch("subject", make_entries(["c1"]), weights)
    assert _ids(store.get_active("subject")) == ["c1"]


def test_stale_expected_epoch_is_rejected(store, make_entries, weights):
    store.replace_active_epoch("subject", make_entries(["c1"]), weights)

    with pytest.raises(ConcurrentReplacementError):
        store.replace_active_epoch("subject", make_entries(["c2"]), weights, expected_epoch_id=None)

    assert _ids(store.get_active("subject")) == ["c1"]


def test_any_epoch_skips_compare_and_swap(store, make_entries, weights):
    store.replace_active_epoch("subject", make_entries(["c1"]), weights)
    store.replace_active_epoch("subject", make_entries(["c2"]), weights, expected_epoch_id=ANY_EPOCH)

    assert _ids(store.get_active("subject")) == ["c2"]


def test_invalid_entries_are_rejected(store, make_entries, weights):
    entries = make_entries(["c1", "c2"])

    with pytest.raises(ValueError):
        store.replace_active_epoch("subject", [entries[0], replace(entries[1], rank=3)], weights)
    with pytest.raises(ValueError):
        store.replace_active_epoch("someone_else", entries, weights)
    with pytest.raises(ValueError):
        store.replace_active_epoch("subject", entries, ScoringWeights(version="v9"))

    assert store.get_active("subject") == []


def test_is_fresh(store, make_entries, weights, as_of):
    assert store.is_fresh("subject", timedelta(hours=24), now=as_of) is False

    store.replace_active_epoch("subject", make_entries(["c1"]), weights, computed_at=as_of)

    assert store.is_fresh("subject", timedelta(hours=24), now=as_of + timedelta(hours=2))
    assert not store.is_fresh("subject", timedelta(hours=24), now=as_of + timedelta(hours=25))


def test_subjects_are_independent(store, make_entries, make_profile, weights):
    other = make_profile("other")
    store.replace_active_epoch("subject", make_entries(["c1"]), weights)
    store.replace_active_epoch("other", make_entries(["c2", "c3"], subject_profile=other), weights)

    assert _ids(store.get_active("subject")) == ["c1"]
    assert len(store.get_active("other")) == 2


class TestJsonFileStore:
    """File-specific behavior"""

    def test_epochs_survive_reopening(self, tmp_path, make_entries, make_profile, weights, as_of):
        root = str(tmp_path / "store")
        first = JsonFileTopPicksStore(root)
        entries = make_entries(["c1", "c2"], subject_profile=make_profile("user/1"))
        epoch = first.replace_active_epoch("user/1", entries, weights)
        first.mark_seen("user/1", "c1", now=as_of)

        reopened = JsonFileTopPicksStore(root)
        active = reopened.get_active("user/1")

        assert reopened.current_epoch_id("user/1") == epoch.epoch_id
        assert _ids(active) == ["c1", "c2"]
        assert active[0].seen_at == as_of

    def test_corrupt_pointer_surfaces_storage_error(self, tmp_path, make_entries, weights):
        store = JsonFileTopPicksStore(str(tmp_path / "store"))
        store.replace_active_epoch("subject", make_entries(["c1"]), weights)
        (tmp_path / "store" / "subject" / "pointer.json").write_text("{not json")

        with pytest.raises(StorageUnavailableError):
            store.get_active("subject")

    def test_no_temporary_files_left_behind(self, tmp_path, make_entries, weights):
        store = JsonFileTopPicksStore(str(tmp_path / "store"))
        store.replace_active_epoch("subject", make_entries(["c1"]), weights)

        leftovers = list((tmp_path / "store").rglob("*.tmp"))

        assert leftovers == []
        assert list((tmp_path / "store").rglob("replace.lock")) == []

    def test_similar_subject_ids_do_not_share_picks(self, tmp_path, make_entries, make_profile, weights):
        store = JsonFileTopPicksStore(str(tmp_path / "store"))
        for subject_id in ["user/1", "user_1", "user%2F1"]:
            entries = make_entries(["c1"], subject_profile=make_profile(subject_id))
            store.replace_active_epoch(subject_id, entries, weights)

        subjects = {e.subject_id for sid in ["user/1", "user_1", "user%2F1"]
                    for e in store.get_active(sid)}

        assert subjects == {"user/1", "user_1", "user%2F1"}
        assert store.get_active("user_2") == []
        assert len(list((tmp_path / "store").iterdir())) == 3

    @pytest.mark.parametrize("subject_id", ["..", ".", "../escape"])
    def test_dot_subject_ids_stay_inside_root(self, tmp_path, make_entries, make_profile, weights, subject_id):
        root = tmp_path / "store"
        store = JsonFileTopPicksStore(str(root))
        entries = make_entries(["c1"], subject_profile=make_profile(subject_id))

        store.replace_active_epoch(subject_id, entries, weights)

        assert [e.subject_id for e in store.get_active(subject_id)] == [subject_id]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["store"]
        assert not (root / "pointer.json").exists()

    def test_epoch_of_another_subject_is_rejected(self, tmp_path, make_entries, weights):
        root = tmp_path / "store"
        store = JsonFileTopPicksStore(str(root))
        store.replace_active_epoch("subject", make_entries(["c1"]), weights)
        # Point "other" at subject's files
        shutil.copytree(root / "subject", root / "other")

        with pytest.raises(StorageUnavailableError):
            store.get_active("other")

    def test_malformed_seen_marks_surface_storage_error(self, tmp_path, make_entries, weights):
        root = tmp_path / "store"
        store = JsonFileTopPicksStore(str(root))
        epoch = store.replace_active_epoch("subject", make_entries(["c1"]), weights)
        seen_dir = root / "subject" / "seen"
        seen_dir.mkdir(parents=True, exist_ok=True)
        (seen_dir / f"{epoch.epoch_id}.json").write_text(json.dumps({"c1": "yesterday"}))

        with pytest.raises(StorageUnavailableError):
            store.get_active("subject")

    def test_second_instance_on_same_root_cannot_interleave(
        self, tmp_path, make_entries, weights, monkeypatch
    ):
        root = str(tmp_path / "store")
        first = JsonFileTopPicksStore(root)
        second = JsonFileTopPicksStore(root)
        original_write = first._write_epoch
        outcomes = []

        def write_while_second_competes(epoch):
            try:
                second.replace_active_epoch(
                    "subject", make_entries(["b1"]), weights, expected_epoch_id=None
                )
                outcomes.append("ok")
            except ConcurrentReplacementError:
                outcomes.append("lost")
            original_write(epoch)

        monkeypatch.setattr(first, "_write_epoch", write_while_second_competes)

        epoch = first.replace_active_epoch(
            "subject", make_entries(["a1", "a2"]), weights, expected_epoch_id=None
        )

        assert outcomes == ["lost"]
        assert second.current_epoch_id("subject") == epoch.epoch_id
        assert _ids(second.get_active("subject")) == ["a1", "a2"]

    def test_leftover_lock_file_blocks_replacement(self, tmp_path, make_entries, weights):
        root = tmp_path / "store"
        store = JsonFileTopPicksStore(str(root))
        (root / "subject").mkdir()
        (root / "subject" / "replace.lock").write_text("12345")

        with pytest.raises(ConcurrentReplacementError):
            store.replace_active_epoch("subject", make_entries(["c1"]), weights)

        (root / "subject" / "replace.lock").unlink()
        store.replace_active_epoch("subject", make_entries(["c1"]), weights)
        assert _ids(store.get_active("subject")) == ["c1"]

    def test_lock_file_released_after_failed_write(self, tmp_path, make_entries, weights, monkeypatch):
        root = tmp_path / "store"
        store = JsonFileTopPicksStore(str(root))

        def unavailable(epoch):
            raise StorageUnavailableError("disk full")

        monkeypatch.setattr(store, "_write_epoch", unavailable)

        with pytest.raises(StorageUnavailableError):
            store.replace_active_epoch("subject", make_entries(["c1"]), weights)

        assert not (root / "subject" / "replace.lock").exists()


def test_create_store_from_config(tmp_path):
    assert isinstance(create_store_from_config({}), InMemoryTopPicksStore)
    file_store = create_store_from_config(
        {"storage": {"backend": "file", "path": str(tmp_path / "picks")}}
    )
    assert isinstance(file_store, JsonFileTopPicksStore)

    with pytest.raises(ValueError):
        create_store_from_config({"storage": {"backend": "file"}})
    with pytest.raises(ValueError):
        create_store_from_config({"storage": {"backend": "redis"}})
