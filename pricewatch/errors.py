"""Engine error taxonomy.

Review requests are not errors; they are modelled as a result type in
pricewatch.extract.arbitrator.
"""


class ExtractionError(RuntimeError):
    """Raised by a fetcher or strategy that could not produce a candidate."""


class BlockedError(ExtractionError):
    """Raised when the site refuses access (401, 403)."""


class TransientFetchError(ExtractionError):
    """Raised when a fetch fails for a retryable reason (5xx, timeouts)."""


class ChannelDeliveryFailed(RuntimeError):
    """Raised when a notification channel rejects or times out a message."""

    def __init__(self, channel: str, reason: str):
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason


class ScheduleConflict(RuntimeError):
    """Raised when a product is already claimed by another cycle."""

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} is already being checked")
        self.product_id = product_id


class StaleWriteRejected(RuntimeError):
    """Raised when a history write would break per-product time ordering."""

    def __init__(self, table: str, product_id: int, message: str):
        super().__init__(f"{table} write for product {product_id} rejected: {message}")
        self.table = table
        self.product_id = product_id


class ProductNotFound(LookupError):
    """Raised when a product id does not exist (or belongs to another user)."""

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class InvalidReviewResolution(ValueError):
    """Raised when resolving a review with an unusable choice."""


class DuplicateProduct(ValueError):
    """Raised when a user already tracks the URL."""

    def __init__(self, url: str):
        super().__init__(f"Already tracking {url}")
        self.url = url
