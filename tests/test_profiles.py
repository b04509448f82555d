import json
import os
import stat

import pytest
import yaml

from conftest import FakeClock
from sshmcp.errors import (
    KeyPathNotFoundError, LastProfileError, MissingEnvVarError, ProfileOperationError, ValidationError,
)
from sshmcp.profiles import ProfileStore, derive_note


def make_store(path, **kwargs):
    store = ProfileStore(path, **kwargs)
    store.initialize()
    return store


def read_yaml(path):
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def test_active_profile_from_document(two_profiles):
    store = make_store(two_profiles)
    assert store.get_active_profile_id() == "a"
    assert store.get_active_profile().host == "10.0.0.1"


def test_override_wins_when_it_exists(two_profiles):
    assert make_store(two_profiles, profile_override="b").get_active_profile_id() == "b"
    assert make_store(two_profiles, profile_override="ghost").get_active_profile_id() == "a"


def test_list_masks_passwords(two_profiles):
    store = make_store(two_profiles)
    listed = store.list_profiles()
    assert [p["id"] for p in listed] == ["a", "b"]
    assert listed[0]["auth"] == {"type": "password", "password": "***"}
    assert listed[0]["active"] is True
    assert listed[1]["active"] is False
    assert "secret" not in json.dumps(listed)


def test_set_active_runtime_only_does_not_write(two_profiles):
    store = make_store(two_profiles)
    before = open(two_profiles, "rb").read()
    store.set_active_profile("b")
    assert store.get_active_profile_id() == "b"
    assert open(two_profiles, "rb").read() == before


def test_set_active_persist_writes_document(two_profiles):
    store = make_store(two_profiles)
    summary = store.set_active_profile("b", persist=True)
    assert summary["id"] == "b"
    assert read_yaml(two_profiles)["activeProfile"] == "b"


def test_set_active_unknown_profile(two_profiles):
    store = make_store(two_profiles)
    with pytest.raises(ProfileOperationError):
        store.set_active_profile("ghost")
    assert store.get_active_profile_id() == "a"


def test_reload_keeps_runtime_selection(two_profiles):
    store = make_store(two_profiles)
    store.set_active_profile("b")
    result = store.reload()
    assert result["activeProfile"] == "b"
    assert result["profileCount"] == 2


def test_env_var_set_later_is_picked_up(write_config, monkeypatch):
    monkeypatch.delenv("SSHMCP_LATE_HOST", raising=False)
    path = write_config("""
        version: 1
        activeProfile: a
        profiles:
          - {id: a, name: A, host: "${SSHMCP_LATE_HOST}", user: u, auth: {type: password, password: p}}
    """)
    store = ProfileStore(path)
    with pytest.raises(MissingEnvVarError) as excinfo:
        store.initialize()
    assert "SSHMCP_LATE_HOST" in str(excinfo.value)

    monkeypatch.setenv("SSHMCP_LATE_HOST", "db.internal")
    store.initialize()
    assert store.get_active_profile().host == "db.internal"


def test_find_ranks_exact_id_first(two_profiles):
    store = make_store(two_profiles)
    results = store.find_profiles("b")
    assert results[0]["id"] == "b"
    assert results[0]["score"] >= 100


def test_find_by_tag_only(two_profiles):
    results = make_store(two_profiles).find_profiles("DB")
    assert [r["id"] for r in results] == ["b"]
    assert results[0]["score"] == 5


def test_find_ties_keep_document_order(two_profiles):
    results = make_store(two_profiles).find_profiles("10.0.0")
    assert [r["id"] for r in results] == ["a", "b"]
    assert results[0]["score"] == results[1]["score"] == 40


def test_find_empty_query_returns_all(two_profiles):
    store = make_store(two_profiles)
    assert [r["id"] for r in store.find_profiles("")] == ["a", "b"]
    assert len(store.find_profiles("", limit=1)) == 1
    assert store.find_profiles("nothing-matches") == []


def test_update_note_preserves_placeholders(write_config, monkeypatch):
    monkeypatch.setenv("SSHMCP_NOTE_PASS", "pw")
    path = write_config(
        json.dumps({
            "version": 1,
            "activeProfile": "a",
            "profiles": [{
                "id": "a", "name": "A", "host": "h", "user": "u",
                "auth": {"type": "password", "password": "${SSHMCP_NOTE_PASS}"},
            }],
        }),
        name="profiles.json",
    )
    store = make_store(path)
    summary = store.update_note("a", "primary database")
    assert summary["note"] == "primary database"
    with open(path, "r", encoding="utf-8") as handle:
        saved = json.load(handle)
    assert saved["profiles"][0]["note"] == "primary database"
    assert saved["profiles"][0]["auth"]["password"] == "${SSHMCP_NOTE_PASS}"


def test_create_profile_appends_and_derives_note(two_profiles):
    store = make_store(two_profiles)
    summary = store.create_profile({
        "id": "c",
        "name": "Gamma",
        "host": "10.0.0.3",
        "user": "admin",
        "auth": {"type": "password", "password": "pw"},
        "tags": ["cache"],
        "contextSummary": "redis\nreplica",
    })
    assert summary["note"] == "redis replica | tags: cache | Gamma(10.0.0.3)"
    assert store.get_active_profile_id() == "a"
    assert [p["id"] for p in read_yaml(two_profiles)["profiles"]] == ["a", "b", "c"]


def test_create_profile_with_activate(two_profiles):
    store = make_store(two_profiles)
    store.create_profile(
        {"id": "c", "host": "h", "user": "u", "auth": {"type": "password", "password": "pw"}},
        activate=True,
    )
    assert store.get_active_profile_id() == "c"
    assert read_yaml(two_profiles)["activeProfile"] == "c"


def test_create_duplicate_leaves_file_untouched(two_profiles):
    store = make_store(two_profiles)
    before = open(two_profiles, "rb").read()
    with pytest.raises(ProfileOperationError):
        store.create_profile({"id": "a", "host": "h", "user": "u", "auth": {"type": "password", "password": "x"}})
    assert open(two_profiles, "rb").read() == before


def test_create_with_missing_key_writes_nothing(two_profiles):
    store = make_store(two_profiles)
    before = open(two_profiles, "rb").read()
    with pytest.raises(KeyPathNotFoundError):
        store.create_profile({"id": "k", "host": "h", "user": "u", "auth": {"type": "key", "keyPath": "no/such/key"}})
    assert open(two_profiles, "rb").read() == before
    assert [p["id"] for p in store.list_profiles()] == ["a", "b"]


def test_derive_note_truncates():
    note = derive_note({"id": "x", "host": "h", "contextSummary": "word " * 60})
    assert len(note) == 120
    assert note.endswith("...")


def test_delete_flow_falls_back_to_remaining_profile(two_profiles):
    store = make_store(two_profiles)
    prepared = store.prepare_delete_profile("a")
    assert prepared["confirmationText"] == "DELETE a"
    assert os.path.isfile(prepared["backupPath"])

    result = store.confirm_delete_profile(prepared["requestId"], "a", "DELETE a")
    assert result["deletedProfileId"] == "a"
    assert result["activeProfile"] == "b"
    assert result["persistedActiveProfile"] == "b"
    saved = read_yaml(two_profiles)
    assert saved["activeProfile"] == "b"
    assert [p["id"] for p in saved["profiles"]] == ["b"]

    # the request is single-use
    with pytest.raises(ProfileOperationError):
        store.confirm_delete_profile(prepared["requestId"], "a", "DELETE a")


def test_delete_requires_exact_confirmation(two_profiles):
    store = make_store(two_profiles)
    prepared = store.prepare_delete_profile("b")
    with pytest.raises(ProfileOperationError) as excinfo:
        store.confirm_delete_profile(prepared["requestId"], "b", "delete b")
    assert "DELETE b" in str(excinfo.value)
    with pytest.raises(ProfileOperationError):
        store.confirm_delete_profile(prepared["requestId"], "a", "DELETE a")
    assert len(read_yaml(two_profiles)["profiles"]) == 2


def test_delete_request_expires(two_profiles):
    clock = FakeClock()
    store = make_store(two_profiles, clock=clock)
    prepared = store.prepare_delete_profile("b")
    clock.now += 601
    with pytest.raises(ProfileOperationError) as excinfo:
        store.confirm_delete_profile(prepared["requestId"], "b", "DELETE b")
    assert "expired" in str(excinfo.value)
    assert store.pending_delete_requests() == []


def test_cannot_delete_last_profile(write_config):
    path = write_config("""
        version: 1
        activeProfile: only
        profiles:
          - {id: only, name: Only, host: h, user: u, auth: {type: password, password: p}}
    """)
    store = make_store(path)
    with pytest.raises(LastProfileError):
        store.prepare_delete_profile("only")


def test_backup_permissions_and_name(two_profiles, tmp_path):
    store = make_store(two_profiles)
    prepared = store.prepare_delete_profile("b", reason="../../etc/passwd")
    backup_path = prepared["backupPath"]
    backup_dir = tmp_path / ".backups"
    assert os.path.dirname(backup_path) == str(backup_dir)
    assert stat.S_IMODE(os.stat(backup_dir).st_mode) == 0o700
    assert stat.S_IMODE(os.stat(backup_path).st_mode) == 0o600
    name = os.path.basename(backup_path)
    assert name.startswith("profiles.")
    assert name.endswith(".bak.yaml")
    assert "/" not in name
    assert open(backup_path, "rb").read() == open(two_profiles, "rb").read()


def test_default_backup_reason(two_profiles):
    store = make_store(two_profiles)
    prepared = store.prepare_delete_profile("b")
    assert ".delete-b.bak.yaml" in prepared["backupPath"]


def test_exact_id_beats_profile_matching_every_other_field(write_config):
    path = write_config("""
        version: 1
        activeProfile: web
        profiles:
          - {id: web, name: Frontend, host: 10.0.0.9, user: deploy, auth: {type: password, password: p}}
          - id: web2
            name: web
            host: web
            user: web
            note: web
            tags: [web]
            auth: {type: password, password: p}
    """)
    results = make_store(path).find_profiles("web")
    assert [r["id"] for r in results] == ["web", "web2"]
    assert results[1]["score"] > results[0]["score"]


def test_create_rejects_non_mapping_auth(two_profiles):
    store = make_store(two_profiles)
    before = open(two_profiles, "rb").read()
    with pytest.raises(ValidationError) as excinfo:
        store.create_profile({"id": "c", "host": "h", "user": "u", "auth": "password"})
    assert "create profile" in str(excinfo.value)
    assert open(two_profiles, "rb").read() == before
