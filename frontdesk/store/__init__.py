from frontdesk.store.data_store import DataStore, JsonDataStore, StorageError

__all__ = ["DataStore", "JsonDataStore", "StorageError"]
