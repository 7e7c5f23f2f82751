import os
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from couchbase.auth import PasswordAuthenticator
from acouchbase.cluster import Cluster as AsyncCluster
from couchbase.options import ClusterOptions

logger = logging.getLogger(__name__)

# Environment variables
USERNAME = os.environ.get('COUCHBASE_USERNAME', '')
PASSWORD = os.environ.get('COUCHBASE_PASSWORD', '')
DEFAULT_BUCKET_NAME = os.environ.get('COUCHBASE_BUCKET', 'marketplace')
HOST = os.environ.get('COUCHBASE_HOST', '')
PROTOCOL = os.environ.get('COUCHBASE_PROTOCOL', 'couchbase')

VALID_PROTOCOLS = ('couchbase', 'couchbases')

# Module-level cluster cache
_cluster: Optional[AsyncCluster] = None


def validate_config() -> List[str]:
    """Return the list of configuration problems (empty when valid)."""
    errors = []
    if not USERNAME:
        errors.append("COUCHBASE_USERNAME is missing or empty")
    if not PASSWORD:
        errors.append("COUCHBASE_PASSWORD is missing or empty")
    if not HOST:
        errors.append("COUCHBASE_HOST is missing or empty")
    if not DEFAULT_BUCKET_NAME:
        errors.append("COUCHBASE_BUCKET is missing or empty")
    if PROTOCOL not in VALID_PROTOCOLS:
        errors.append(f"COUCHBASE_PROTOCOL '{PROTOCOL}' is invalid. Must be one of {VALID_PROTOCOLS}")
    return errors


async def get_cluster(max_retries: int = 10, initial_delay: float = 1.0, max_delay: float = 30.0) -> AsyncCluster:
    """
    Returns a cached Couchbase cluster connection.
    Configuration is validated on the first connect, not at import time,
    so the engine modules can be imported without a cluster.
    Implements retry with exponential backoff for startup race conditions.
    """
    global _cluster
    if _cluster is None:
        errors = validate_config()
        if errors:
            raise ValueError("Invalid Couchbase Configuration:\n" + "\n".join(errors))

        url = PROTOCOL + "://" + HOST
        auth = PasswordAuthenticator(USERNAME, PASSWORD)
        delay = initial_delay

        for attempt in range(1, max_retries + 1):
            try:
                cluster = await AsyncCluster.connect(url, ClusterOptions(auth))
                break
            except Exception as e:
                if attempt == max_retries:
                    raise
                logger.warning(f"Couchbase connect attempt {attempt}/{max_retries} failed: {e}")
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)  # capped

        await cluster.wait_until_ready(timedelta(seconds=50))
        _cluster = cluster
    return _cluster


async def get_default_bucket():
    cluster = await get_cluster()
    return cluster.bucket(DEFAULT_BUCKET_NAME)


async def check_connection():
    """
    Explicitly checks the connection to the Couchbase cluster.
    Useful for startup checks.
    """
    cluster = await get_cluster()
    await cluster.ping()


async def close_cluster():
    global _cluster
    if _cluster is not None:
        await _cluster.close()
        _cluster = None
