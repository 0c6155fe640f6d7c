import base64

import pytest
from cryptography.exceptions import InvalidTag

from vidlens.errors import NoCredentials
from vidlens.services.credentials import CredentialRotator, KeySealer
from vidlens.storage import init_db


def test_select_without_credentials_raises(tmp_path):
    conn = init_db(str(tmp_path / "bot.db"))
    rotator = CredentialRotator(conn)
    assert rotator.register([]) == 0
    with pytest.raises(NoCredentials):
        rotator.select()


def test_register_is_idempotent(tmp_path):
    conn = init_db(str(tmp_path / "bot.db"))
    rotator = CredentialRotator(conn)
    rotator.register(["key-aaaa", "key-bbbb", "key-aaaa", " "])
    rotator.register(["key-aaaa", "key-bbbb"])

    rows = conn.execute("SELECT COUNT(*) FROM api_keys").fetchone()
    assert rows[0] == 2
    assert rotator.count == 2


def test_unused_credentials_are_preferred(tmp_path):
    conn = init_db(str(tmp_path / "bot.db"))
    rotator = CredentialRotator(conn)
    rotator.register(["key-aaaa", "key-bbbb", "key-cccc"])

    picked = {rotator.select().key for _ in range(3)}
    assert picked == {"key-aaaa", "key-bbbb", "key-cccc"}


def test_selection_is_fair(tmp_path):
    conn = init_db(str(tmp_path / "bot.db"))
    rotator = CredentialRotator(conn)
    rotator.register(["key-aaaa", "key-bbbb", "key-cccc"])

    for _ in range(11):
        rotator.select()

    counts = [credential.usage_count for credential in rotator.list_credentials()]
    assert sum(counts) == 11
    assert max(counts) - min(counts) <= 1
    assert all(credential.last_used for credential in rotator.list_credentials())


def test_rotation_survives_restart(tmp_path):
    db_path = str(tmp_path / "bot.db")
    first = CredentialRotator(init_db(db_path))
    first.register(["key-aaaa", "key-bbbb"])
    used = first.select().key

    second = CredentialRotator(init_db(db_path))
    second.register(["key-aaaa", "key-bbbb"])
    assert second.select().key != used


def test_unregistered_keys_are_not_selected(tmp_path):
    db_path = str(tmp_path / "bot.db")
    CredentialRotator(init_db(db_path)).register(["key-old1"])

    rotator = CredentialRotator(init_db(db_path))
    rotator.register(["key-new1"])
    for _ in range(3):
        assert rotator.select().key == "key-new1"


def test_keys_are_encrypted_when_master_key_set(tmp_path, monkeypatch):
    monkeypatch.setenv("VIDLENS_MASTER_KEY", base64.urlsafe_b64encode(b"m" * 32).decode("utf-8"))
    conn = init_db(str(tmp_path / "bot.db"))
    rotator = CredentialRotator(conn)
    rotator.register(["key-secret-1234"])

    key_id, stored = conn.execute("SELECT key_id, api_key FROM api_keys").fetchone()
    assert key_id == "v1"
    assert "key-secret" not in stored
    credential = rotator.select()
    assert credential.key == "key-secret-1234"
    assert credential.key_last4 == "1234"


def test_sealed_key_is_bound_to_its_fingerprint():
    sealer = KeySealer(b"s" * 32)
    blob = sealer.seal("key-secret-1234", "fp-one")

    assert "key-secret" not in blob
    assert sealer.unseal(blob, "fp-one") == "key-secret-1234"
    with pytest.raises(InvalidTag):
        sealer.unseal(blob, "fp-two")


def test_short_master_key_rejected(monkeypatch):
    monkeypatch.setenv("VIDLENS_MASTER_KEY", base64.urlsafe_b64encode(b"short").decode("utf-8"))
    with pytest.raises(ValueError):
        KeySealer.from_env()


def test_no_master_key_means_no_sealer(monkeypatch):
    monkeypatch.delenv("VIDLENS_MASTER_KEY", raising=False)
    assert KeySealer.from_env() is None


def test_sealed_rows_need_the_master_key(tmp_path, monkeypatch):
    monkeypatch.delenv("VIDLENS_MASTER_KEY", raising=False)
    db_path = str(tmp_path / "bot.db")
    CredentialRotator(init_db(db_path), sealer=KeySealer(b"s" * 32)).register(["key-secret-1234"])

    rotator = CredentialRotator(init_db(db_path))
    rotator.register(["key-secret-1234"])
    with pytest.raises(NoCredentials):
        rotator.select()
