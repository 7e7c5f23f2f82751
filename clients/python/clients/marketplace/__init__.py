from .client import (
    CartServiceClient,
    NotificationServiceClient,
    ProductServiceClient,
)
from .exceptions import (
    MarketplaceClientError,
    MarketplaceConnectionError,
    MarketplaceResponseError,
)

__all__ = [
    "CartServiceClient",
    "NotificationServiceClient",
    "ProductServiceClient",
    "MarketplaceClientError",
    "MarketplaceConnectionError",
    "MarketplaceResponseError",
]
