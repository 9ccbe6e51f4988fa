"""
Tests for the SQLite-backed local store and the saved trader token list.
"""
import pytest

from errors import ConfigError
from token_store import LocalStore, TraderTokenList


@pytest.fixture
def store(tmp_path):
    return LocalStore(str(tmp_path / "local.db"))


@pytest.fixture
def tokens(store):
    return TraderTokenList(store)


class TestLocalStore:

    def test_missing_key(self, store):
        assert store.get_item("nothing") is None

    def test_set_and_overwrite(self, store):
        store.set_item("theme", "dark")
        store.set_item("theme", "light")

        assert store.get_item("theme") == "light"

    def test_remove(self, store):
        store.set_item("theme", "dark")
        store.remove_item("theme")

        assert store.get_item("theme") is None

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "persist.db")
        LocalStore(path).set_item("k", "v")

        assert LocalStore(path).get_item("k") == "v"


class TestTraderTokenList:

    def test_empty_by_default(self, tokens):
        assert tokens.load() == []

    def test_add_in_order(self, tokens):
        tokens.add("token-a")
        result = tokens.add("token-b")

        assert result == ["token-a", "token-b"]
        assert tokens.load() == ["token-a", "token-b"]

    def test_add_strips_whitespace(self, tokens):
        assert tokens.add("  token-a \n") == ["token-a"]

    def test_blank_rejected(self, tokens):
        with pytest.raises(ConfigError, match="Please enter a valid API token"):
            tokens.add("   ")

    def test_duplicate_rejected(self, tokens):
        tokens.add("token-a")

        with pytest.raises(ConfigError, match="This token is already added"):
            tokens.add("token-a")

        assert tokens.load() == ["token-a"]

    def test_remove(self, tokens):
        tokens.add("token-a")
        tokens.add("token-b")

        assert tokens.remove("token-a") == ["token-b"]
        assert tokens.remove("not-there") == ["token-b"]

    def test_stored_under_copy_trading_key(self, store, tokens):
        tokens.add("token-a")
        assert store.get_item("copyTradingTokens") == '["token-a"]'

    def test_corrupt_value_loads_empty(self, store, tokens):
        store.set_item("copyTradingTokens", "{not json")
        assert tokens.load() == []

    def test_non_list_value_loads_empty(self, store, tokens):
        store.set_item("copyTradingTokens", '{"a": 1}')
        assert tokens.load() == []
