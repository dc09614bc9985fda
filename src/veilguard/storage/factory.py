"""Trust store configuration and initialization.

Chooses a storage backend from configuration:
- VEILGUARD_STORAGE_BACKEND: "memory" (default) or "dynamodb"
- VEILGUARD_DYNAMODB_TABLE: DynamoDB table for trust state
- AWS_DEFAULT_REGION / AWS_PROFILE: AWS connection settings
"""

import logging
from typing import Optional

from veilguard.common.config import Config, StorageBackend, get_config
from veilguard.common.exceptions import ConfigurationError
from veilguard.storage.base import TrustStore
from veilguard.storage.memory import InMemoryTrustStore


logger = logging.getLogger(__name__)


def create_trust_store(
    config: Optional[Config] = None,
    backend: Optional[StorageBackend] = None,
    **kwargs
) -> TrustStore:
    """Factory method to create a trust store based on configuration.
    
    Args:
        config: Configuration to read from. Uses the global config if not provided.
        backend: Explicit backend, overriding the configured one
        **kwargs: Additional arguments for store initialization
        
    Returns:
        Configured TrustStore instance
    """
    config = config or get_config()
    backend = backend or config.storage_backend
    
    if backend == StorageBackend.MEMORY:
        logger.info("Using in-memory trust store")
        return InMemoryTrustStore()
    
    if backend == StorageBackend.DYNAMODB:
        from veilguard.storage.dynamodb import DynamoDBTrustStore
        
        return DynamoDBTrustStore(
            table_name=kwargs.pop("table_name", None) or config.dynamodb_table,
            region=kwargs.pop("region", None) or config.aws_region,
            aws_profile=kwargs.pop("aws_profile", None) or config.aws_profile,
            **kwargs
        )
    
    raise ConfigurationError(f"Unknown storage backend: {backend}")
