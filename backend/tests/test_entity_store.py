import os
import sqlite3
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from carematch.models import ProviderProfile, SeekerProfile
from carematch.services.entity_store import EntityStore
from carematch.services.errors import NotFoundError, StorageError


@pytest.fixture
def store(tmp_path):
    return EntityStore(db_path=str(tmp_path / "carematch.sqlite3"))


def _count(store: EntityStore, table: str, email: str) -> int:
    with sqlite3.connect(str(store.db_path)) as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE email = ?", (email,)).fetchone()[0]


def test_upsert_provider_twice_keeps_one_row_and_first_created_at(store):
    profile = ProviderProfile(
        email="caregiver1@example.com",
        name="Maria Lopez",
        location="New York, NY",
        rate_expectations=35,
    )
    first = store.upsert_provider(profile)
    second = store.upsert_provider(profile)

    assert _count(store, "providers", "caregiver1@example.com") == 1
    assert first.created_at is not None
    assert second.created_at == first.created_at
    assert store.get_provider("caregiver1@example.com").created_at == first.created_at


def test_upsert_provider_merges_partial_fields(store):
    store.upsert_provider(ProviderProfile(email="caregiver1@example.com", location="New York, NY"))
    merged = store.upsert_provider(ProviderProfile(email="caregiver1@example.com", rate_expectations=35))

    assert merged.location == "New York, NY"
    assert merged.rate_expectations == 35.0
    stored = store.get_provider("caregiver1@example.com")
    assert stored.location == "New York, NY"
    assert stored.rate_expectations == 35.0


def test_upsert_seeker_overwrites_supplied_fields_only(store):
    store.upsert_seeker(
        SeekerProfile(
            email="patient1@example.com",
            name="John Smith",
            location="New York, NY",
            budget=40,
            phone_number="555-123-4567",
        )
    )
    store.upsert_seeker(SeekerProfile(email="patient1@example.com", location="Brooklyn, NY", care_needs="Companionship"))

    seeker = store.get_seeker("patient1@example.com")
    assert seeker.location == "Brooklyn, NY"
    assert seeker.care_needs == "Companionship"
    assert seeker.name == "John Smith"
    assert seeker.budget == 40.0
    assert seeker.phone_number == "555-123-4567"


def test_numeric_fields_default_to_zero(store):
    seeker = store.upsert_seeker(SeekerProfile(email="patient2@example.com", location="Austin, TX"))
    assert seeker.budget == 0.0
    provider = store.upsert_provider(ProviderProfile(email="caregiver2@example.com"))
    assert provider.rate_expectations == 0.0


def test_get_missing_profiles_raise_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_provider("nobody@example.com")
    with pytest.raises(NotFoundError):
        store.get_seeker("nobody@example.com")
    assert store.find_provider("nobody@example.com") is None


def test_list_profiles_returns_all_rows(store):
    store.upsert_provider(ProviderProfile(email="b@example.com", location="Boston, MA"))
    store.upsert_provider(ProviderProfile(email="a@example.com", location="Austin, TX"))
    store.upsert_seeker(SeekerProfile(email="c@example.com"))

    assert [p.email for p in store.list_providers()] == ["a@example.com", "b@example.com"]
    assert [s.email for s in store.list_seekers()] == ["c@example.com"]


def test_add_skill_is_idempotent(store):
    store.add_skill("caregiver1@example.com", "dementia care")
    store.add_skill("caregiver1@example.com", "dementia care")

    assert _count(store, "skills", "caregiver1@example.com") == 1
    assert store.get_skills("caregiver1@example.com") == ["dementia care"]


def test_remove_skill(store):
    store.add_skill("caregiver1@example.com", "cpr")
    store.add_skill("caregiver1@example.com", "first aid")
    store.remove_skill("caregiver1@example.com", "cpr")
    store.remove_skill("caregiver1@example.com", "not-there")

    assert store.get_skills("caregiver1@example.com") == ["first aid"]


def test_conversation_log_is_chronological_and_limit_keeps_tail(store):
    for index in range(5):
        store.append_conversation_entry("patient1@example.com", "user", f"message {index}")
    store.append_conversation_entry("someone@example.com", "user", "other participant")

    entries = store.load_conversation("patient1@example.com")
    assert [e.content for e in entries] == [f"message {i}" for i in range(5)]
    assert [e.id for e in entries] == sorted(e.id for e in entries)

    tail = store.load_conversation("patient1@example.com", limit=2)
    assert [e.content for e in tail] == ["message 3", "message 4"]
    assert store.load_conversation("patient1@example.com", limit=0) == []


def test_conversation_entries_sharing_a_timestamp_keep_insertion_order(store, monkeypatch):
    monkeypatch.setattr(
        "carematch.services.entity_store._utc_now",
        lambda: "2026-01-01T00:00:00+00:00",
    )
    store.append_conversation_entry("patient1@example.com", "user", "first")
    store.append_conversation_entry("patient1@example.com", "assistant", "second")
    store.append_conversation_entry("patient1@example.com", "user", "third")

    entries = store.load_conversation("patient1@example.com")
    assert [e.content for e in entries] == ["first", "second", "third"]
    assert entries[0].recipient == "admin"


def test_append_rejects_unknown_role(store):
    with pytest.raises(StorageError):
        store.append_conversation_entry("patient1@example.com", "tool", "nope")


def test_record_match_updates_status_and_keeps_created_at(store):
    proposed = store.record_match("caregiver1@example.com", "patient1@example.com")
    accepted = store.record_match("caregiver1@example.com", "patient1@example.com", status="accepted")

    assert accepted.status == "accepted"
    assert accepted.created_at == proposed.created_at
    assert len(store.list_matches("patient1@example.com")) == 1
    assert store.list_matches("caregiver1@example.com")[0].status == "accepted"


def test_record_match_rejects_unknown_status(store):
    with pytest.raises(StorageError):
        store.record_match("caregiver1@example.com", "patient1@example.com", status="married")


def test_run_select_only_allows_select(store):
    with pytest.raises(StorageError):
        store.run_select("DELETE FROM providers")


def test_corrupt_database_file_raises_storage_error(tmp_path):
    db_path = tmp_path / "broken.sqlite3"
    db_path.write_bytes(b"this is not a sqlite database" * 64)
    with pytest.raises(StorageError):
        EntityStore(db_path=str(db_path))


def test_run_select_wraps_integer_overflow(store):
    with pytest.raises(StorageError):
        store.run_select("SELECT * FROM providers WHERE rate_expectations < ?", (10**30,))


def test_concurrent_upserts_for_one_email_keep_every_field(store):
    fields = {
        "name": "Maria Lopez",
        "experience": "8 years",
        "location": "New York, NY",
        "availability": "Weekdays",
        "specializations": "Dementia care",
        "certifications": "CNA",
    }
    barrier = threading.Barrier(len(fields) + 1)
    errors = []

    def _write(update):
        try:
            barrier.wait()
            store.upsert_provider(ProviderProfile(email="caregiver1@example.com", **update))
        except Exception as exc:
            errors.append(exc)

    updates = [{name: value} for name, value in fields.items()] + [{"rate_expectations": 35}]
    threads = [threading.Thread(target=_write, args=(update,)) for update in updates]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert _count(store, "providers", "caregiver1@example.com") == 1
    provider = store.get_provider("caregiver1@example.com")
    for name, value in fields.items():
        assert getattr(provider, name) == value
    assert provider.rate_expectations == 35.0
