"""KeyRingRepository 및 CrypterFactory 테스트."""

from __future__ import annotations

import json
import threading

import pytest

from atrest.core.events import EventKind
from atrest.db.migrations import connect
from atrest.db.models import KeyRing
from atrest.db.repository import KeyRingRepository
from atrest.security.crypter_factory import CrypterFactory
from atrest.security.encryption import Crypter
from atrest.security.errors import BadVersionError, CryptoError, KeyRingError
from atrest.security.keys import KeyMaterial, KeyMetadata, KeyPurpose, KeyStatus, KeyType
from records import Message


def _raw_row(db_path: str, scope: str):
    with connect(db_path) as db:
        return db.execute(
            "SELECT metadata, secrets FROM key_rings WHERE scope = ?", (scope,)
        ).fetchone()


class _BrokenMaster:
    """래핑이 항상 실패하는 마스터 Crypter 대역."""

    def encrypt_text(self, plaintext: str) -> str:
        raise CryptoError("master key unavailable")

    def decrypt_text(self, encoded: str) -> str:
        raise BadVersionError("not wrapped")


# ===================================================================
# fetch_or_create
# ===================================================================

class TestFetchOrCreate:
    def test_creates_single_primary_version(self, key_rings):
        ring = key_rings.fetch_or_create("s1")
        assert ring.scope == "s1"
        assert list(ring.secrets) == ["0"]

        metadata = KeyMetadata.from_json(key_rings.get_metadata("s1"))
        assert metadata.name == "s1"
        assert metadata.purpose is KeyPurpose.DECRYPT_AND_ENCRYPT
        assert [(v.version_number, v.status) for v in metadata.versions] == [(0, KeyStatus.PRIMARY)]

    def test_second_call_returns_stored_ring(self, key_rings):
        first = key_rings.fetch_or_create("s1")
        second = key_rings.fetch_or_create("s1", key_size=256)
        assert first == second

    def test_size_clamped_to_acceptable(self, key_rings):
        key = KeyMaterial.from_json(key_rings.get_key("odd", key_size=100))
        assert key.size == 128
        key = KeyMaterial.from_json(key_rings.get_key("big", key_size=256))
        assert key.size == 256

    def test_stored_wrapped_under_master_key(self, key_rings, db_path):
        key_rings.fetch_or_create("s1")
        row = _raw_row(db_path, "s1")
        assert not row["metadata"].startswith("{")
        secret = json.loads(row["secrets"])["0"]
        assert "keyString" not in secret
        # 래핑 해제된 값은 JSON
        assert json.loads(key_rings.get_metadata("s1"))["name"] == "s1"
        assert "keyString" in json.loads(key_rings.get_key("s1"))

    def test_stored_raw_without_master_key(self, db_path):
        repo = KeyRingRepository(db_path)
        repo.fetch_or_create("s1")
        row = _raw_row(db_path, "s1")
        assert json.loads(row["metadata"])["name"] == "s1"
        assert "keyString" in json.loads(json.loads(row["secrets"])["0"])

    def test_master_wrap_failure_falls_back_to_raw(self, db_path, caplog):
        repo = KeyRingRepository(db_path, _BrokenMaster())
        repo.fetch_or_create("s1")
        row = _raw_row(db_path, "s1")
        assert json.loads(row["metadata"])["name"] == "s1"
        assert "래핑 실패" in caplog.text
        # 원문 저장분도 두 단계 읽기로 사용 가능
        assert Crypter(_reader(repo, "s1")).decrypt(Crypter(_reader(repo, "s1")).encrypt(b"x")) == b"x"

    def test_unwrapped_ring_readable_with_master(self, db_path, key_rings):
        KeyRingRepository(db_path).fetch_or_create("legacy")
        assert json.loads(key_rings.get_metadata("legacy"))["name"] == "legacy"
        assert KeyMaterial.from_json(key_rings.get_key("legacy")).size == 128

    def test_missing_version_is_none(self, key_rings):
        assert key_rings.get_key_version(7, "s1") is None
        assert key_rings.get_key_version(0, "s1") is not None

    def test_concurrent_first_access_creates_one_ring(self, key_rings):
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(key_rings.get_key("hot"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(results)) == 1
        assert key_rings.list_scopes() == ["hot"]

    def test_insert_if_absent_across_instances(self, db_path, master, monkeypatch):
        winner = KeyRingRepository(db_path, master)
        loser = KeyRingRepository(db_path, master)
        expected = winner.fetch_or_create("race")

        # 다른 프로세스가 먼저 만든 상황: 첫 두 번의 조회는 아직 없다고 본다
        real_find = loser.find
        calls = {"n": 0}

        def stale_find(scope):
            calls["n"] += 1
            if calls["n"] <= 2:
                return None
            return real_find(scope)

        monkeypatch.setattr(loser, "find", stale_find)
        assert loser.fetch_or_create("race") == expected


# ===================================================================
# 회전 / 삭제 / 관리
# ===================================================================

def _reader(repo, scope):
    from atrest.security.crypter_factory import ScopedKeyReader

    return ScopedKeyReader(repo, scope, KeyPurpose.DECRYPT_AND_ENCRYPT, KeyType.AES, 128)


class TestAdministration:
    def test_rotate_keeps_old_versions_decryptable(self, key_rings):
        old_crypter = Crypter(_reader(key_rings, "s1"))
        old_ciphertext = old_crypter.encrypt(b"before rotation")

        assert key_rings.rotate("s1", key_size=256) == 1

        metadata = KeyMetadata.from_json(key_rings.get_metadata("s1"))
        assert [(v.version_number, v.status) for v in metadata.versions] == [
            (0, KeyStatus.ACTIVE),
            (1, KeyStatus.PRIMARY),
        ]
        crypter = Crypter(_reader(key_rings, "s1"))
        assert crypter.decrypt(old_ciphertext) == b"before rotation"
        new_ciphertext = crypter.encrypt(b"after")
        assert new_ciphertext[1:5] != old_ciphertext[1:5]
        assert KeyMaterial.from_json(key_rings.get_key("s1")).size == 256

    def test_rotate_creates_missing_ring(self, key_rings):
        assert key_rings.rotate("fresh") == 1
        assert len(key_rings.find("fresh").secrets) == 2

    def test_delete_by_scope(self, key_rings):
        key_rings.fetch_or_create("s1")
        assert key_rings.exists("s1")
        assert key_rings.delete_by_scope("s1") is True
        assert not key_rings.exists("s1")
        assert key_rings.delete_by_scope("s1") is False

    def test_delete_destroys_key(self, key_rings):
        ciphertext = Crypter(_reader(key_rings, "s1")).encrypt(b"secret")
        key_rings.delete_by_scope("s1")
        with pytest.raises(CryptoError):
            Crypter(_reader(key_rings, "s1")).decrypt(ciphertext)

    def test_list_scopes_and_all_metadata(self, key_rings):
        for scope in ("b", "a"):
            key_rings.fetch_or_create(scope)
        assert key_rings.list_scopes() == ["a", "b"]
        names = [json.loads(m)["name"] for m in key_rings.get_all_metadata()]
        assert names == ["a", "b"]

    def test_wrap_unwrapped(self, db_path, key_rings):
        KeyRingRepository(db_path).fetch_or_create("legacy")
        key_rings.fetch_or_create("wrapped")
        key_before = key_rings.get_key("legacy")

        assert key_rings.wrap_unwrapped() == 1
        assert not _raw_row(db_path, "legacy")["metadata"].startswith("{")
        assert key_rings.get_key("legacy") == key_before
        assert key_rings.wrap_unwrapped() == 0

    def test_wrap_unwrapped_requires_master(self, db_path):
        with pytest.raises(ValueError):
            KeyRingRepository(db_path).wrap_unwrapped()


# ===================================================================
# CrypterFactory
# ===================================================================

class TestCrypterFactory:
    def test_create(self, crypters):
        crypter = crypters.create("s1")
        assert crypter is not None
        assert crypter.decrypt(crypter.encrypt(b"x")) == b"x"

    def test_same_scope_shares_key(self, crypters):
        ciphertext = crypters.create("s1").encrypt(b"x")
        assert crypters.create("s1").decrypt(ciphertext) == b"x"

    def test_hmac_scope_yields_none(self, crypters, caplog):
        assert crypters.create("h", KeyPurpose.SIGN_AND_VERIFY, KeyType.HMAC_SHA256, 256) is None
        assert "Crypter 로드 실패" in caplog.text

    @pytest.mark.parametrize("metadata", ["{garbage", 5, "[]"])
    def test_malformed_metadata_yields_none(self, key_rings, crypters, db_path, metadata):
        key_rings.fetch_or_create("broken")
        with connect(db_path) as db:
            db.execute("UPDATE key_rings SET metadata = ? WHERE scope = ?", (metadata, "broken"))
            db.commit()
        assert crypters.create("broken") is None

    @pytest.mark.parametrize(
        "secrets",
        ['{"0": 5}', "[]", '{"0": null}', "not json", r'{"0": "{\"type\": \"AES\", \"keyString\": 7}"}'],
    )
    def test_malformed_secrets_yield_none(self, key_rings, crypters, db_path, secrets):
        key_rings.fetch_or_create("broken")
        with connect(db_path) as db:
            db.execute("UPDATE key_rings SET secrets = ? WHERE scope = ?", (secrets, "broken"))
            db.commit()
        assert crypters.create("broken") is None

    def test_non_string_ring_values_rejected(self, key_rings):
        with pytest.raises(KeyRingError):
            key_rings.ring_metadata(KeyRing(scope="x", metadata=5, secrets={}))
        with pytest.raises(KeyRingError):
            key_rings.ring_key(KeyRing(scope="x", metadata="{}", secrets={"0": 5}), 0)

    @pytest.mark.parametrize("secrets", ['{"0": 5}', "[]"])
    def test_malformed_secrets_do_not_break_documents(self, ds, raw_ds, db_path, event_log, secrets):
        doc_id = ds.save(Message(scope="broken", body="secret"))
        with connect(db_path) as db:
            db.execute("UPDATE key_rings SET secrets = ? WHERE scope = ?", (secrets, "broken"))
            db.commit()

        as_read = ds.get(Message, doc_id)
        assert as_read.scope == "broken"
        assert as_read.body == raw_ds.get_raw(Message, doc_id)["body"]

        new_id = ds.save(Message(scope="broken", body="plain"))
        assert raw_ds.get_raw(Message, new_id)["body"] == "plain"
        assert EventKind.NO_CRYPTER in event_log.kinds()

    def test_one_ring_read_per_crypter(self, key_rings, crypters, monkeypatch):
        key_rings.rotate("s1")
        key_rings.rotate("s1")
        calls = []
        real_find = key_rings.find

        def counting_find(scope):
            calls.append(scope)
            return real_find(scope)

        monkeypatch.setattr(key_rings, "find", counting_find)
        crypter = crypters.create("s1")
        assert crypter.version_count == 3
        assert calls == ["s1"]

    def test_storage_error_yields_none(self, tmp_path):
        # 테이블이 없는 DB
        factory = CrypterFactory(KeyRingRepository(str(tmp_path / "empty.db")))
        assert factory.create("s1") is None
