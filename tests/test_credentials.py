"""Tests for the credential store and freshness gate."""

import base64
import json
import os
import stat
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from stationsearch.exceptions import CredentialStoreCorruptError, PersistenceError
from stationsearch.session.credentials import (
    CredentialRecord,
    CredentialStore,
    token_expires_at,
)
from stationsearch.session.freshness import FreshnessGate


def _jwt(claims: dict) -> str:
    def part(data: dict) -> str:
        raw = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
        return raw.rstrip("=")

    return f"{part({'alg': 'HS256', 'typ': 'JWT'})}.{part(claims)}.signature"


class TestCredentialStore:
    def test_missing_file_is_no_credential(self, store):
        assert store.load("dispatcharr") is None

    def test_save_then_load(self, store):
        record = CredentialRecord(access_token="a1", refresh_token="r1")
        store.save("dispatcharr", record)

        loaded = store.load("dispatcharr")
        assert loaded.access_token == "a1"
        assert loaded.refresh_token == "r1"
        assert loaded.obtained_at == record.obtained_at

    def test_document_shape(self, store):
        store.save("dispatcharr", CredentialRecord(access_token="a1", refresh_token="r1"))
        data = json.loads(store.path_for("dispatcharr").read_text())
        assert data["access"] == "a1"
        assert data["refresh"] == "r1"
        assert "obtained_at" in data

    def test_refresh_omitted_when_absent(self, store):
        store.save("emby", CredentialRecord(access_token="tok"))
        data = json.loads(store.path_for("emby").read_text())
        assert "refresh" not in data
        assert store.load("emby").refresh_token is None

    def test_user_id_round_trip(self, store):
        store.save("emby", CredentialRecord(access_token="tok", user_id="user-1"))
        assert store.load("emby").user_id == "user-1"
        assert store.load("emby").with_access("tok2").user_id == "user-1"

    def test_file_is_private(self, store):
        store.save("dispatcharr", CredentialRecord(access_token="a1"))
        mode = stat.S_IMODE(os.stat(store.path_for("dispatcharr")).st_mode)
        assert mode == 0o600

    def test_no_temp_files_left_behind(self, store):
        store.save("dispatcharr", CredentialRecord(access_token="a1"))
        store.save("dispatcharr", CredentialRecord(access_token="a2"))
        assert [p.name for p in store.directory.iterdir()] == ["dispatcharr_tokens.json"]

    def test_legacy_document_without_timestamp(self, store):
        """Files from the shell version only carry access/refresh."""
        store.directory.mkdir(parents=True)
        store.path_for("dispatcharr").write_text('{"access": "a1", "refresh": "r1"}')

        loaded = store.load("dispatcharr")
        assert loaded.access_token == "a1"
        assert loaded.obtained_at.tzinfo is not None

    def test_document_without_access_is_no_credential(self, store):
        store.directory.mkdir(parents=True)
        store.path_for("dispatcharr").write_text('{"access": null, "refresh": "r1"}')
        assert store.load("dispatcharr") is None

    def test_corrupt_document_raises(self, store):
        store.directory.mkdir(parents=True)
        store.path_for("dispatcharr").write_text("{not json")
        with pytest.raises(CredentialStoreCorruptError):
            store.load("dispatcharr")

    def test_clear(self, store):
        store.save("dispatcharr", CredentialRecord(access_token="a1"))
        store.clear("dispatcharr")
        assert store.load("dispatcharr") is None
        # Clearing again is not an error
        store.clear("dispatcharr")

    def test_save_failure_raises_persistence_error(self, store):
        with patch("stationsearch.session.credentials.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                store.save("dispatcharr", CredentialRecord(access_token="a1"))

        assert store.load("dispatcharr") is None
        assert list(store.directory.iterdir()) == []

    def test_services_are_independent(self, store):
        store.save("dispatcharr", CredentialRecord(access_token="a1"))
        store.save("emby", CredentialRecord(access_token="e1"))
        store.clear("emby")
        assert store.load("dispatcharr").access_token == "a1"


class TestCredentialRecord:
    def test_with_access_keeps_refresh(self):
        record = CredentialRecord(access_token="old", refresh_token="r1")
        updated = record.with_access("new")
        assert updated.access_token == "new"
        assert updated.refresh_token == "r1"
        assert record.access_token == "old"

    def test_empty_record(self):
        assert CredentialRecord(access_token=None).is_empty
        assert CredentialRecord(access_token="").is_empty
        assert not CredentialRecord(access_token="a").is_empty


class TestTokenExpiry:
    def test_jwt_exp_claim(self):
        token = _jwt({"exp": 1_900_000_000, "user_id": 1})
        assert token_expires_at(token) == datetime.fromtimestamp(1_900_000_000, tz=UTC)

    def test_non_jwt_token(self):
        assert token_expires_at("0123456789abcdef") is None
        assert token_expires_at(None) is None

    def test_jwt_without_exp(self):
        assert token_expires_at(_jwt({"user_id": 1})) is None

    def test_garbage_payload(self):
        assert token_expires_at("aaa.!!!.ccc") is None

    @pytest.mark.parametrize("exp", [10**20, -(10**20)])
    def test_out_of_range_exp(self, exp):
        assert token_expires_at(_jwt({"exp": exp})) is None


class TestFreshnessGate:
    def test_first_call_needs_check(self, clock):
        gate = FreshnessGate(30, clock=clock)
        assert gate.needs_check()

    def test_fresh_within_threshold(self, clock):
        gate = FreshnessGate(30, clock=clock)
        gate.mark_checked_now()
        clock.advance(29)
        assert not gate.needs_check()

    def test_stale_after_threshold(self, clock):
        gate = FreshnessGate(30, clock=clock)
        gate.mark_checked_now()
        clock.advance(31)
        assert gate.needs_check()

    def test_force_stale(self, clock):
        gate = FreshnessGate(30, clock=clock)
        gate.mark_checked_now()
        gate.force_stale()
        assert gate.needs_check()

    def test_claim_marks_before_returning(self, clock):
        """Only the first caller in a burst wins the check."""
        gate = FreshnessGate(30, clock=clock)
        assert gate.claim() is True
        assert gate.claim() is False
        clock.advance(5)
        assert gate.claim() is False

    def test_threshold_can_change(self, clock):
        gate = FreshnessGate(30, clock=clock)
        gate.mark_checked_now()
        clock.advance(10)
        gate.threshold_seconds = 5
        assert gate.needs_check()
