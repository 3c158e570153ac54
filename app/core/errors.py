"""HARVEST — Error Taxonomy.

Provider failures live with the provider contract (``ProviderError``);
a lost ``try_acquire`` race is an outcome, not an error.
"""


class HarvestError(Exception):
    """Base class for orchestrator errors."""


class ValidationError(HarvestError):
    """Malformed scheduling input. Rejected before any state mutation."""


class NotFoundError(HarvestError):
    """Missing account / profile mapping or metadata row."""


class PersistenceError(HarvestError):
    """Metadata store write or read failed. Redelivery is the queue's call."""
