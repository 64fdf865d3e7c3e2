# Standardized Cosmos DB client implementation

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.cosmos import CosmosClient, PartitionKey, exceptions
from azure.cosmos.container import ContainerProxy

from feedstore.shared.settings import FeedStoreSettings
from feedstore.specs.common.errors import ConfigurationError, NotFoundError, TransientStoreError

# Too Many Requests, Request Timeout, Retry With, Service Unavailable
RETRYABLE_STATUS_CODES = (408, 429, 449, 503)


@contextmanager
def translate_cosmos_errors(collection: str, doc_id: Optional[str] = None) -> Iterator[None]:
    """Map SDK exceptions onto the feed store error taxonomy.

    404 becomes NotFoundError, throttling/timeouts/connection failures become
    TransientStoreError, anything else propagates unchanged.
    """
    try:
        yield
    except exceptions.CosmosResourceNotFoundError as e:
        raise NotFoundError(collection, doc_id or "<query>") from e
    except exceptions.CosmosHttpResponseError as e:
        if e.status_code in RETRYABLE_STATUS_CODES:
            logging.warning(f"Retryable Cosmos error on '{collection}': {e.status_code}")
            raise TransientStoreError(
                f"Retryable Cosmos error on '{collection}'",
                details={"statusCode": e.status_code, "docId": doc_id},
            ) from e
        raise
    except (ServiceRequestError, ServiceResponseError) as e:
        raise TransientStoreError(
            f"Cosmos connection failure on '{collection}'", details={"error": str(e)}
        ) from e


class CosmosDBClient:
    # SDK-level retries; the feed store adds its own backoff on top
    MAX_RETRIES = 3

    def __init__(self, settings: Optional[FeedStoreSettings] = None):
        """Initialize the Cosmos DB client with connection settings and retry policy"""
        settings = settings or FeedStoreSettings.from_env()
        self.connection_string = settings.cosmos_connection_string
        self.database_name = settings.cosmos_database_name

        if not self.connection_string or not self.database_name:
            raise ConfigurationError("Missing Cosmos DB connection string or database name")

        self.client = CosmosClient.from_connection_string(
            self.connection_string,
            retry_total=self.MAX_RETRIES,
            connection_timeout=int(settings.store_operation_timeout),
        )
        self.database = self.client.get_database_client(self.database_name)
        self._containers: Dict[str, ContainerProxy] = {}

    def get_container(self, container_name: str) -> ContainerProxy:
        """
        Get a container by name with environment variable override

        Args:
            container_name: Base name of the container

        Returns:
            ContainerProxy for the container
        """
        if container_name not in self._containers:
            env_container_name = os.environ.get(f"COSMOS_DB_CONTAINER_{container_name.upper()}")
            actual_name = env_container_name or container_name
            self._containers[container_name] = self.database.get_container_client(actual_name)
        return self._containers[container_name]

    def ensure_container(self, container_name: str, partition_key_path: str) -> ContainerProxy:
        """
        Create the container if it does not exist yet

        Args:
            container_name: Name of the container
            partition_key_path: Partition key path, e.g. '/id' or '/postId'

        Returns:
            ContainerProxy for the container
        """
        with translate_cosmos_errors(container_name):
            container = self.database.create_container_if_not_exists(
                id=container_name,
                partition_key=PartitionKey(path=partition_key_path),
            )
        self._containers[container_name] = container
        logging.info(f"Ensured container '{container_name}' (pk={partition_key_path})")
        return container

    def replace_container_settings(
        self,
        container_name: str,
        partition_key_path: str,
        *,
        indexing_policy: Optional[Dict[str, Any]] = None,
        default_ttl: Optional[int] = None,
    ) -> None:
        """
        Replace indexing policy and/or default TTL, keeping whichever is not given

        Args:
            container_name: Name of the container
            partition_key_path: Partition key path of the container
            indexing_policy: New indexing policy
            default_ttl: New default TTL; -1 enables per-item TTL without a default
        """
        container = self.get_container(container_name)
        with translate_cosmos_errors(container_name):
            props = container.read()
            self.database.replace_container(
                container,
                partition_key=PartitionKey(path=partition_key_path),
                indexing_policy=indexing_policy or props.get("indexingPolicy"),
                default_ttl=default_ttl if default_ttl is not None else props.get("defaultTtl"),
            )
