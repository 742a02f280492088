"""
Database discovery for per-database backups.
"""

import logging
from datetime import timedelta
from typing import List

from pymongo import MongoClient
from pymongo.errors import ConfigurationError, PyMongoError

from .errors import EnumerationFailed

logger = logging.getLogger(__name__)

DATABASE_LIST_TIMEOUT = timedelta(minutes=10)


def list_database_names(uri: str, timeout: timedelta = DATABASE_LIST_TIMEOUT) -> List[str]:
    """
    List the databases visible through a MongoDB URI.

    The client is closed when the call returns, whether or not listing
    succeeded.

    Args:
        uri: MongoDB connection string
        timeout: Upper bound for connecting and listing

    Returns:
        Database names in the order reported by the server

    Raises:
        EnumerationFailed: If connecting or listing fails
    """
    timeout_ms = int(timeout.total_seconds() * 1000)

    logger.info("Listing MongoDB databases: connecting")
    try:
        client = MongoClient(uri, timeoutMS=timeout_ms, serverSelectionTimeoutMS=timeout_ms)
    except (ConfigurationError, ValueError) as e:
        raise EnumerationFailed(f"Failed to connect to MongoDB: {e}") from e

    with client:
        try:
            names = client.list_database_names()
        except PyMongoError as e:
            raise EnumerationFailed(f"Failed to list databases: {e}") from e

    logger.info(f"Listing MongoDB databases: {len(names)} databases")
    return names
