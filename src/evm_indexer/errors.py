"""Error kinds shared across the registry, aggregator and pipeline."""


class IndexerError(Exception):
    """Base exception for indexer errors."""


class InvalidInput(IndexerError):
    """Raised when a raw value or transaction is malformed."""


class StorageConflict(IndexerError):
    """Raised when a write collides with an existing row and cannot be resolved."""


class StorageUnavailable(IndexerError):
    """Raised when the storage backend fails (connection loss, timeout, I/O)."""


class ReorgConflict(IndexerError):
    """Raised when a retraction target is missing or the ledger is inconsistent.

    This is fatal: proceeding would corrupt aggregated stats.
    """


class BlockCommitError(IndexerError):
    """Raised when a block cannot be committed after all retries."""

    def __init__(self, height: int, block_hash: bytes, cause: BaseException) -> None:
        self.height = height
        self.block_hash = block_hash
        self.cause = cause
        super().__init__(
            f"Block {height} (0x{block_hash.hex()}) could not be committed: {cause}"
        )
