"""
Exception hierarchy for the discovery pipeline.

Only configuration and persistence errors ever reach an entrypoint caller.
Provider errors are caught at the stage that produced them and routed to a
fallback (or the candidate is dropped). Unparseable LLM output is a
ParseFailure value, not an exception.
"""


class FundingDiscoveryError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(FundingDiscoveryError):
    """Required credentials or settings are missing."""


class ProviderError(FundingDiscoveryError):
    """A search, LLM, or content-fetch provider failed."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class PersistenceError(FundingDiscoveryError):
    """A store write failed on both the upsert and the fallback insert."""


class MissingDataError(FundingDiscoveryError, LookupError):
    """A project, profile, or opportunity needed for scoring does not exist."""
