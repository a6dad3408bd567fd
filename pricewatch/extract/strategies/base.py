"""Base interface for price extraction strategies."""

from abc import ABC, abstractmethod

from pricewatch.errors import ExtractionError
from pricewatch.extract.candidates import ExtractionMethod, FetchedPage, PriceCandidate


class StrategyError(ExtractionError):
    """Raised when a strategy cannot run against a page."""

    pass


class ExtractionStrategy(ABC):
    """Abstract base class for extraction strategies."""

    method: ExtractionMethod

    @abstractmethod
    async def extract(self, page: FetchedPage) -> list[PriceCandidate]:
        """
        Propose price candidates for a fetched page.

        Args:
            page: Fetched page; strategies may fill in name, image_url and
                stock_status when they find them

        Returns:
            Candidates found (possibly empty)

        Raises:
            StrategyError: If the strategy failed to run
        """
        pass

    def applies_to(self, page: FetchedPage) -> bool:
        """Whether the strategy has anything to say about this page."""
        return True

    @property
    def name(self) -> str:
        return self.method.value
