from boxsync.core.config import Settings
from boxsync.stores.base import DocumentStore
from boxsync.stores.firestore_rest import FirestoreRestStore
from boxsync.stores.memory import InMemoryDocumentStore


def _memory(settings: Settings) -> DocumentStore:
    return InMemoryDocumentStore()


def _firestore(settings: Settings) -> DocumentStore:
    token = settings.firestore_token.get_secret_value() if settings.firestore_token else None
    return FirestoreRestStore(
        project_id=settings.firestore_project_id,
        database=settings.firestore_database,
        base_url=settings.firestore_base_url,
        token=token,
        timeout_seconds=settings.http_timeout_seconds,
        poll_interval_seconds=settings.firestore_poll_interval_seconds,
    )


STORES = {
    InMemoryDocumentStore.key: _memory,
    FirestoreRestStore.key: _firestore,
}

def get_store(kind: str, settings: Settings) -> DocumentStore:
    if kind not in STORES:
        raise KeyError(f"Unknown document store: {kind}")
    return STORES[kind](settings)
