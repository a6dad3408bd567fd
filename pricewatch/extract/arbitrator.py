"""Candidate arbitration: resolve strategy outputs to one price or a review."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Union

from pricewatch.config import settings
from pricewatch.extract.candidates import (
    METHOD_PRIORITY,
    ExtractionMethod,
    PriceCandidate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SuggestedPrice:
    """Display hint shown alongside a review request."""
    price: Decimal
    currency: str

    def to_dict(self) -> dict:
        return {"price": str(self.price), "currency": self.currency}


@dataclass(frozen=True)
class Accepted:
    """A price of record was decided."""
    price: Decimal
    currency: str
    method: ExtractionMethod
    forced: bool = False
    candidate: Optional[PriceCandidate] = None


@dataclass(frozen=True)
class NeedsReview:
    """Candidates disagree; a human has to pick one."""
    candidates: list[PriceCandidate] = field(default_factory=list)
    suggested_price: Optional[SuggestedPrice] = None


@dataclass(frozen=True)
class ExtractionFailed:
    """No strategy produced a candidate."""
    reason: str = "no candidates"


ArbitrationOutcome = Union[Accepted, NeedsReview, ExtractionFailed]


def _by_confidence(candidate: PriceCandidate) -> tuple:
    # Ties broken by method priority so ordering is deterministic
    return (-candidate.confidence, METHOD_PRIORITY[candidate.method])


class Arbitrator:
    """
    Turns the candidates of one fetch into exactly one outcome.

    Steps:
    1. Drop candidates under the confidence floor (keep the best one if
       all are under it).
    2. Unanimous price and currency: accept from the highest-priority method.
    3. Disagreement with a clear, strong leader: accept the leader.
    4. Anything else: ask for review.
    """

    def __init__(
        self,
        confidence_floor: Optional[float] = None,
        strong_threshold: Optional[float] = None,
        strong_margin: Optional[float] = None,
    ):
        self.confidence_floor = (
            settings.arbitration_confidence_floor if confidence_floor is None else confidence_floor
        )
        self.strong_threshold = (
            settings.arbitration_strong_threshold if strong_threshold is None else strong_threshold
        )
        self.strong_margin = (
            settings.arbitration_strong_margin if strong_margin is None else strong_margin
        )

    def filter_candidates(self, candidates: Iterable[PriceCandidate]) -> list[PriceCandidate]:
        """Apply the confidence floor; results sorted by confidence descending."""
        ranked = sorted(candidates, key=_by_confidence)
        if not ranked:
            return []
        survivors = [c for c in ranked if c.confidence >= self.confidence_floor]
        if not survivors:
            return ranked[:1]
        return survivors

    def is_unanimous(self, candidates: Iterable[PriceCandidate]) -> bool:
        """True when every candidate above the floor agrees on price and currency."""
        survivors = self.filter_candidates(candidates)
        return len({(c.normalized_price, c.currency) for c in survivors}) == 1

    def arbitrate(self, candidates: Iterable[PriceCandidate]) -> ArbitrationOutcome:
        candidates = list(candidates)
        if not candidates:
            return ExtractionFailed()

        below_floor = all(c.confidence < self.confidence_floor for c in candidates)
        survivors = self.filter_candidates(candidates)

        if below_floor:
            # Waived floor: the lone survivor is only good enough for review
            return self._review(survivors)

        groups = {(c.normalized_price, c.currency) for c in survivors}
        if len(groups) == 1:
            winner = min(survivors, key=lambda c: (METHOD_PRIORITY[c.method], -c.confidence))
            logger.debug(
                f"Unanimous price {winner.normalized_price} {winner.currency} "
                f"from {len(survivors)} candidate(s), accepting via {winner.method.value}"
            )
            return Accepted(
                price=winner.normalized_price,
                currency=winner.currency,
                method=winner.method,
                candidate=winner,
            )

        top = survivors[0]
        runner_up = survivors[1].confidence if len(survivors) > 1 else 0.0
        if top.confidence >= self.strong_threshold and top.confidence - runner_up >= self.strong_margin:
            logger.debug(
                f"Candidates disagree, strong leader {top.method.value} "
                f"({top.confidence:.2f} vs {runner_up:.2f}) accepted"
            )
            return Accepted(
                price=top.normalized_price,
                currency=top.currency,
                method=top.method,
                candidate=top,
            )

        return self._review(survivors)

    @staticmethod
    def _review(survivors: list[PriceCandidate]) -> NeedsReview:
        top = survivors[0]
        return NeedsReview(
            candidates=list(survivors),
            suggested_price=SuggestedPrice(price=top.normalized_price, currency=top.currency),
        )

    @staticmethod
    def force(candidate: PriceCandidate) -> Accepted:
        """Accept a user- or caller-chosen candidate without arbitration."""
        return Accepted(
            price=candidate.normalized_price,
            currency=candidate.currency,
            method=candidate.method,
            forced=True,
            candidate=candidate,
        )

    def resolve_with_preferences(
        self,
        candidates: Iterable[PriceCandidate],
        anchor_price: Optional[Decimal] = None,
        preferred_method: Optional[str] = None,
    ) -> ArbitrationOutcome:
        """
        Arbitrate for an already-tracked product.

        A confirmed anchor price wins first: the candidate closest to it is
        forced, which keeps variant pages pinned to the variant the user
        picked. Next, a preferred method with candidates is forced. Only
        then does normal arbitration run.
        """
        candidates = list(candidates)
        if not candidates:
            return ExtractionFailed()

        if anchor_price is not None and anchor_price > 0:
            closest = min(
                candidates,
                key=lambda c: (abs(c.price - anchor_price), _by_confidence(c)),
            )
            distance = abs(closest.price - anchor_price) / anchor_price
            if distance > Decimal(str(settings.anchor_match_tolerance)):
                logger.info(
                    f"No candidate near anchor {anchor_price}, closest {closest.price} "
                    f"({float(distance) * 100:.1f}% away), treating as a price change"
                )
            return self.force(closest)

        if preferred_method:
            preferred = [c for c in candidates if c.method.value == preferred_method]
            if preferred:
                return self.force(min(preferred, key=_by_confidence))

        return self.arbitrate(candidates)


arbitrator = Arbitrator()
