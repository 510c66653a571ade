"""Tests for the local preference cache stores."""

from datetime import datetime, timezone

import pytest

from privacy.models import (
    DataProcessingPurpose,
    LegalBasis,
    MutationKind,
    PrivacyPreferences,
    PurposeConsent,
    RegionCode,
    SyncMutation,
)
from services.cache_store import InMemoryCacheStore, JsonFileCacheStore


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _preferences(user_id="user-123"):
    consent = PurposeConsent(
        purpose=DataProcessingPurpose.ANALYTICS,
        granted=True,
        legal_basis=LegalBasis.CONSENT,
        region=RegionCode.EU,
        consent_version="2.0",
        updated_at=NOW,
        record_id="rec-1",
    )
    return PrivacyPreferences(user_id=user_id, purposes={consent.purpose: consent}, updated_at=NOW)


def _pending(mutation_id="mut-1", user_id="user-123"):
    return SyncMutation(
        id=mutation_id,
        kind=MutationKind.CONSENT_RECORD,
        user_id=user_id,
        entity_id="rec-1",
        payload={"id": "rec-1"},
        created_at=NOW,
    )


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCacheStore()
    return JsonFileCacheStore(tmp_path / "cache")


def test_missing_user(store):
    assert store.get_preferences("nobody") is None
    assert store.list_pending("nobody") == []


def test_preferences_round_trip(store):
    store.put_preferences("user-123", _preferences())

    cached = store.get_preferences("user-123")

    assert cached == _preferences()
    assert cached.is_granted(DataProcessingPurpose.ANALYTICS)


def test_drop_preferences(store):
    store.put_preferences("user-123", _preferences())
    store.drop_preferences("user-123")
    assert store.get_preferences("user-123") is None


def test_pending_mutations(store):
    store.add_pending("user-123", _pending("mut-1"))
    store.add_pending("user-123", _pending("mut-2"))
    store.remove_pending("user-123", "mut-1")

    assert [mutation.id for mutation in store.list_pending("user-123")] == ["mut-2"]
    assert store.list_pending("other") == []


def test_pending_and_preferences_are_independent(store):
    store.add_pending("user-123", _pending())
    store.put_preferences("user-123", _preferences())
    store.drop_preferences("user-123")

    assert len(store.list_pending("user-123")) == 1


def test_memory_store_returns_copies():
    store = InMemoryCacheStore()
    store.put_preferences("user-123", _preferences())

    cached = store.get_preferences("user-123")
    cached.purposes.clear()

    assert store.get_preferences("user-123").purposes


class TestJsonFileCacheStore:
    def test_one_file_per_user(self, tmp_path):
        store = JsonFileCacheStore(tmp_path)
        store.put_preferences("user/../123", _preferences("user/../123"))

        files = list(tmp_path.glob("*.json"))

        assert len(files) == 1
        assert files[0].parent == tmp_path

    def test_corrupt_file_is_a_miss(self, tmp_path):
        store = JsonFileCacheStore(tmp_path)
        (tmp_path / "user-123.json").write_text("{broken", encoding="utf-8")

        assert store.get_preferences("user-123") is None
        assert store.list_pending("user-123") == []

        store.put_preferences("user-123", _preferences())
        assert store.get_preferences("user-123") == _preferences()

    def test_malformed_preferences_are_discarded(self, tmp_path):
        store = JsonFileCacheStore(tmp_path)
        (tmp_path / "user-123.json").write_text('{"preferences": {"purposes": {}}}', encoding="utf-8")

        assert store.get_preferences("user-123") is None

    def test_survives_new_instance(self, tmp_path):
        JsonFileCacheStore(tmp_path).add_pending("user-123", _pending())
        assert [m.id for m in JsonFileCacheStore(tmp_path).list_pending("user-123")] == ["mut-1"]
