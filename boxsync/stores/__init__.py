from boxsync.stores.base import (  # noqa: F401
    SERVER_TIMESTAMP,
    ArrayAppend,
    Disposable,
    Document,
    DocumentStore,
    FieldFilter,
    Increment,
    Query,
)
from boxsync.stores.firestore_rest import FirestoreRestStore  # noqa: F401
from boxsync.stores.memory import InMemoryDocumentStore  # noqa: F401
from boxsync.stores.registry import get_store  # noqa: F401
