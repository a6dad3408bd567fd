"""Post-hoc AI verification of an accepted price."""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from openai import OpenAIError
from pydantic import ValidationError

from pricewatch.ai.llm_service import LLMService, llm_service
from pricewatch.ai.prompts import (
    VERIFICATION_SCHEMA,
    VERIFICATION_SYSTEM_PROMPT,
    AIVerificationResponse,
    VerificationPrompt,
)
from pricewatch.config import settings
from pricewatch.extract.arbitrator import Accepted, Arbitrator, NeedsReview, SuggestedPrice
from pricewatch.extract.candidates import (
    ExtractionMethod,
    FetchedPage,
    PriceCandidate,
    StockStatus,
    normalize_amount,
)
from pricewatch.extract.price_parser import parse_amount

logger = logging.getLogger(__name__)

AI_VERIFIED = "verified"
AI_CORRECTED = "corrected"


@dataclass
class VerificationResult:
    """
    Outcome of a verification pass.

    `accepted` is the price to record unless `review` is set, in which case
    the product goes to review with the AI suggestion among the candidates.
    """

    accepted: Accepted
    review: Optional[NeedsReview] = None
    ai_status: Optional[str] = None
    stock_status: Optional[StockStatus] = None
    reason: str = ""


class AIVerifier:
    """
    Second opinion on a price the arbitrator already accepted.

    A confirmation marks the price verified. A confident correction only
    replaces the price when it matches a candidate extracted from the same
    fetch; a confident suggestion outside that set sends the product to
    review with the suggestion added as an AI candidate.
    """

    def __init__(self, service: Optional[LLMService] = None, correction_confidence: Optional[float] = None):
        self.service = service or llm_service
        self.correction_confidence = (
            settings.ai_correction_confidence if correction_confidence is None else correction_confidence
        )

    @property
    def available(self) -> bool:
        return settings.ai_enabled and self.service.available

    async def verify(
        self,
        page: FetchedPage,
        accepted: Accepted,
        candidates: list[PriceCandidate],
    ) -> VerificationResult:
        prompt = VerificationPrompt(
            url=page.url,
            html=page.html,
            price=str(accepted.price),
            currency=accepted.currency,
        )
        try:
            data = await asyncio.wait_for(
                self.service.call_llm_structured(
                    prompt=prompt.to_prompt(),
                    response_schema=VERIFICATION_SCHEMA,
                    system_prompt=VERIFICATION_SYSTEM_PROMPT,
                    purpose="verification",
                ),
                timeout=settings.llm_timeout_seconds,
            )
            response = AIVerificationResponse.model_validate(data)
        except (OpenAIError, ValueError, ValidationError, asyncio.TimeoutError) as e:
            logger.warning(f"AI verification skipped for {page.url}: {e}")
            return VerificationResult(accepted=accepted)

        return self.apply(accepted, candidates, response)

    def apply(
        self,
        accepted: Accepted,
        candidates: list[PriceCandidate],
        response: AIVerificationResponse,
    ) -> VerificationResult:
        """Fold a model verdict into the accepted price."""
        stock = None
        if response.stock_status != StockStatus.UNKNOWN.value:
            stock = StockStatus(response.stock_status)

        if response.is_correct:
            return VerificationResult(
                accepted=accepted,
                ai_status=AI_VERIFIED,
                stock_status=stock,
                reason=response.reason,
            )

        suggested = parse_amount(response.suggested_price)
        if suggested is None or response.confidence <= self.correction_confidence:
            logger.info(
                f"AI disputed {accepted.price} {accepted.currency} without a confident "
                f"alternative (confidence {response.confidence:.2f}), keeping it"
            )
            return VerificationResult(accepted=accepted, stock_status=stock, reason=response.reason)

        currency = (response.suggested_currency or accepted.currency).upper()
        match = self._matching_candidate(candidates, suggested, currency)
        if match is None:
            logger.info(
                f"AI suggested {suggested} {currency} which matches no extracted candidate, raising review"
            )
            suggestion = PriceCandidate(
                price=suggested,
                currency=currency,
                method=ExtractionMethod.AI,
                confidence=response.confidence,
                context=f"AI suggestion: {response.reason}" if response.reason else "AI suggestion",
            )
            return VerificationResult(
                accepted=accepted,
                review=NeedsReview(
                    candidates=sorted([*candidates, suggestion], key=lambda c: -c.confidence),
                    suggested_price=SuggestedPrice(price=accepted.price, currency=accepted.currency),
                ),
                stock_status=stock,
                reason=response.reason,
            )

        logger.info(f"AI corrected price {accepted.price} -> {match.normalized_price} {match.currency}")
        return VerificationResult(
            accepted=Arbitrator.force(match),
            ai_status=AI_CORRECTED,
            stock_status=stock,
            reason=response.reason,
        )

    @staticmethod
    def _matching_candidate(
        candidates: list[PriceCandidate],
        price: Decimal,
        currency: str,
    ) -> Optional[PriceCandidate]:
        target = normalize_amount(price, currency)
        for candidate in candidates:
            if candidate.currency == currency and candidate.normalized_price == target:
                return candidate
        return None


ai_verifier = AIVerifier()
