import threading

import pytest

from poolauth.config import DataProvider, Settings, get_settings
from poolauth.storage import factory
from poolauth.storage.memory import MemoryStore


def test_memory_provider_is_selected():
    store = factory.build_store(Settings(data_provider="memory", mfa_encryption_key="k" * 32))
    assert isinstance(store, MemoryStore)


def test_provider_name_is_case_insensitive():
    settings = Settings(data_provider=" MEMORY ", mfa_encryption_key="k" * 32)
    assert settings.data_provider == DataProvider.MEMORY


def test_unknown_provider_rejected():
    with pytest.raises(ValueError):
        Settings(data_provider="cassandra", mfa_encryption_key="k" * 32)


def test_get_store_returns_one_instance(monkeypatch):
    factory.disconnect_store()
    connects = []

    class CountingStore(MemoryStore):
        def connect(self):
            connects.append(1)
            super().connect()

    monkeypatch.setattr(factory, "build_store", lambda settings: CountingStore())

    results = []
    threads = [threading.Thread(target=lambda: results.append(factory.get_store())) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(connects) == 1
    assert all(store is results[0] for store in results)
    assert get_settings().data_provider == DataProvider.MEMORY


def test_disconnect_allows_rebuild():
    first = factory.get_store()
    factory.disconnect_store()
    factory.disconnect_store()
    second = factory.get_store()
    assert first is not second
