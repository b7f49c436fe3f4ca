"""Exception taxonomy shared by the pipeline, the store and the outer surfaces."""


class DeckforgeError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(DeckforgeError):
    """Required configuration (API credentials, database URL) is missing."""


class NotFoundError(DeckforgeError):
    """Entity does not exist or is not owned by the caller."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class PersistenceError(DeckforgeError):
    """A store write or read failed."""


class FetchError(DeckforgeError):
    """A remote resource could not be fetched (non-2xx or transport error)."""


class ChunkingConfigError(DeckforgeError, ValueError):
    """Chunk size and overlap do not leave a positive stride."""


class DuplicateRunError(DeckforgeError):
    """A pipeline run for this source is already in flight or finished."""


class InvalidTransitionError(DeckforgeError):
    """Requested status change is not allowed from the current status."""
