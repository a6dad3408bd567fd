"""AI fallback extraction through the LLM service."""

import logging
from typing import Optional

from openai import OpenAIError
from pydantic import ValidationError

from pricewatch.ai.llm_service import LLMService, llm_service
from pricewatch.ai.prompts import (
    EXTRACTION_SCHEMA,
    EXTRACTION_SYSTEM_PROMPT,
    AIExtractionResponse,
    ExtractionPrompt,
)
from pricewatch.config import settings
from pricewatch.extract.candidates import (
    ExtractionMethod,
    FetchedPage,
    PriceCandidate,
    StockStatus,
)
from pricewatch.extract.price_parser import parse_amount
from pricewatch.extract.strategies.base import ExtractionStrategy, StrategyError

logger = logging.getLogger(__name__)


class AIStrategy(ExtractionStrategy):
    """
    Asks the model for the current price.

    The model's own confidence becomes the candidate confidence, so a
    low-confidence answer drops out under the arbitration floor.
    """

    method = ExtractionMethod.AI

    def __init__(self, service: Optional[LLMService] = None):
        self.service = service or llm_service

    def applies_to(self, page: FetchedPage) -> bool:
        return settings.ai_enabled and self.service.available

    async def extract(self, page: FetchedPage) -> list[PriceCandidate]:
        prompt = ExtractionPrompt(url=page.url, html=page.html)
        try:
            data = await self.service.call_llm_structured(
                prompt=prompt.to_prompt(),
                response_schema=EXTRACTION_SCHEMA,
                system_prompt=EXTRACTION_SYSTEM_PROMPT,
                purpose="extraction",
            )
            result = AIExtractionResponse.model_validate(data)
        except OpenAIError as e:
            raise StrategyError(f"AI extraction call failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise StrategyError(f"AI extraction returned an unusable response: {e}") from e

        if result.name and not page.name:
            page.name = result.name.strip()
        if result.image_url and not page.image_url:
            page.image_url = result.image_url
        if result.stock_status != StockStatus.UNKNOWN.value and page.stock_status == StockStatus.UNKNOWN:
            page.stock_status = StockStatus(result.stock_status)

        price = parse_amount(result.price)
        if price is None:
            return []

        return [
            PriceCandidate(
                price=price,
                currency=result.currency,
                method=self.method,
                confidence=result.confidence,
                context="AI extraction",
            )
        ]
