from booksync.models_sqlalchemy.models import ConnectionCredential
from booksync.services.credential_store import CredentialStore
from booksync.utils import crypto


def test_encrypt_produces_prefixed_ciphertext():
    token = crypto.encrypt("1000.refresh")

    assert crypto.is_encrypted(token)
    assert "1000.refresh" not in token
    assert crypto.decrypt(token) == "1000.refresh"
    assert crypto.encrypt("1000.refresh") != token


def test_plain_values_pass_through():
    assert crypto.decrypt("legacy-plain-token") == "legacy-plain-token"
    assert crypto.decrypt(None) is None
    assert crypto.encrypt(None) is None


def test_tampered_ciphertext_is_returned_unchanged():
    token = crypto.encrypt("secret")
    tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

    assert crypto.decrypt(tampered) == tampered


def test_credentials_are_stored_encrypted(session_factory):
    store = CredentialStore(session_factory)
    store.save_credentials("client-1", "secret-1", "refresh-1", "EU")

    db = session_factory()
    try:
        row = db.query(ConnectionCredential).one()
        assert crypto.is_encrypted(row._client_secret)
        assert crypto.is_encrypted(row._refresh_token)
    finally:
        db.close()

    creds = store.load()
    assert creds.client_secret == "secret-1"
    assert creds.refresh_token == "refresh-1"
    assert creds.datacenter == "eu"
    assert creds.is_complete


def test_clear_tokens_keeps_client_credentials(session_factory):
    store = CredentialStore(session_factory)
    store.save_credentials("client-1", "secret-1", "refresh-1")

    store.clear_tokens()

    creds = store.load()
    assert creds.client_id == "client-1"
    assert creds.refresh_token is None
    assert creds.is_complete is False
