"""Contracts for reputation and intelligence source adapters."""

from abc import ABC, abstractmethod
from typing import Iterable

from iocflow.models import IOC, EnrichmentPayload, IOCType, SourceScore

ALL_IOC_TYPES = frozenset(IOCType)


class ReputationAdapter(ABC):
    """
    A provider that scores a canonical indicator value.

    Implementations must be side-effect free beyond their own outbound calls
    and must let ``asyncio.CancelledError`` propagate so callers can enforce
    deadlines. Failures may be raised (``AdapterUnavailable`` or any
    exception) or returned as an unavailable SourceScore.
    """

    source_id: str = "unnamed"
    ioc_types: frozenset[IOCType] = ALL_IOC_TYPES
    weight: float = 1.0
    enabled: bool = True

    def supports(self, ioc_type: IOCType) -> bool:
        """Check if this source can score this IOC type."""
        return ioc_type in self.ioc_types

    @abstractmethod
    async def fetch(self, value: str, ioc_type: IOCType) -> SourceScore:
        """
        Score a canonical value.

        Args:
            value: Canonical IOC value
            ioc_type: Type of the value

        Returns:
            SourceScore with raw_score in [0, 1] and provider metadata in details
        """
        ...

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        return None


class IntelligenceAdapter(ABC):
    """A provider that returns contextual intelligence about an IOC."""

    source_id: str = "unnamed"
    ioc_types: frozenset[IOCType] = ALL_IOC_TYPES

    def supports(self, ioc_type: IOCType) -> bool:
        """Check if this source can enrich this IOC type."""
        return ioc_type in self.ioc_types

    @abstractmethod
    async def enrich(self, ioc: IOC) -> EnrichmentPayload:
        """
        Query this source for the given IOC.

        Args:
            ioc: The canonical IOC to enrich

        Returns:
            Structured payload keyed by this adapter's source_id
        """
        ...

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        return None


def applicable(adapters: Iterable, ioc_type: IOCType) -> list:
    """Adapters that declare support for an IOC type, in registration order."""
    return [a for a in adapters if a.supports(ioc_type)]
