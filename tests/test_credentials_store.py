import pytest

from credentials_store import CredentialsStore
from ozon_api import OzonCredentials, mask_api_key, mask_client_id


def test_set_get_clear(tmp_path):
    store = CredentialsStore(tmp_path / "creds.json")
    assert store.get(1) is None
    store.set(1, OzonCredentials(" 123 ", " key "), verified_at=100)
    assert store.get("1") == OzonCredentials("123", "key")
    assert store.has(1)
    store.set(1, OzonCredentials("456", "key2"))
    assert len(store.entries()) == 1
    assert store.clear(1) is True
    assert store.clear(1) is False
    assert store.get(1) is None


def test_blank_values_are_rejected(tmp_path):
    store = CredentialsStore(tmp_path / "creds.json")
    with pytest.raises(ValueError):
        store.set(1, OzonCredentials("123", "  "))


def test_resolve_falls_back_to_default(tmp_path):
    default = OzonCredentials("999", "env-key")
    store = CredentialsStore(tmp_path / "creds.json", default=default)
    assert store.resolve(5) == default
    store.set(5, OzonCredentials("1", "k"))
    assert store.resolve(5) == OzonCredentials("1", "k")
    assert CredentialsStore(tmp_path / "other.json", default=OzonCredentials("", "")).resolve(5) is None


def test_masks():
    assert mask_client_id("1234567") == "123***67"
    assert mask_client_id("12") == "1***"
    assert mask_api_key("abcdefghijkl") == "abcd***ijkl"
    assert mask_api_key("short") == "*****"
