from .config import (
    DEFAULT_BUCKET_NAME,
    get_cluster,
    get_default_bucket,
    check_connection,
    close_cluster,
    validate_config,
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)

from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)
