from pathlib import Path
from typing import Optional

from feedstore.shared.document_store import DocumentStore
from feedstore.shared.logging_utils import info as log_info
from feedstore.shared.memory_store import InMemoryDocumentStore
from feedstore.shared.settings import FeedStoreSettings


def select_backend(settings: FeedStoreSettings) -> str:
    if settings.backend != "auto":
        return settings.backend
    # auto-detect cosmos if config present
    return "cosmos" if settings.cosmos_configured else "memory"


def get_document_store(settings: Optional[FeedStoreSettings] = None) -> DocumentStore:
    settings = settings or FeedStoreSettings.from_env()
    backend = select_backend(settings)
    if backend == "cosmos":
        # Imported lazily so memory-only deployments never open a Cosmos connection
        from feedstore.shared.cosmos_client import CosmosDBClient
        from feedstore.shared.cosmos_store import CosmosDocumentStore

        store = CosmosDocumentStore(
            CosmosDBClient(settings),
            partition_keys={
                settings.posts_container: "id",
                settings.comments_container: "postId",
            },
        )
        store.ensure_containers([settings.posts_container, settings.comments_container])
    else:
        store = InMemoryDocumentStore(Path(settings.state_file) if settings.state_file else None)
    log_info(None, "store:init", backend=backend)
    return store
