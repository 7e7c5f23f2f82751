class MarketplaceClientError(Exception):
    """Base exception for marketplace collaborator calls."""


class MarketplaceConnectionError(MarketplaceClientError):
    """The collaborator service could not be reached."""


class MarketplaceResponseError(MarketplaceClientError):
    """The collaborator service answered with an error status."""

    def __init__(self, service: str, status: int, detail: str):
        self.service = service
        self.status = status
        self.detail = detail
        super().__init__(f"{service} responded {status}: {detail}")
