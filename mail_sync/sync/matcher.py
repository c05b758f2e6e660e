"""
Match resolver: decides which quote an email belongs to.

Strategies run in a fixed priority order and the first one that produces a
quote wins. The order is the contract: a thread match always beats a
subject match, which always beats a client-address match, and so on.
"""

import re
from dataclasses import dataclass
from typing import Callable

from mail_sync.core.logging import get_logger
from mail_sync.core.models import Confidence, MatchResult, ParsedEmail, StrategyName
from mail_sync.core.store import ConversationStore, QuoteLookup

log = get_logger(__name__)

QUOTE_REFERENCE = re.compile(r"quote\s*#?([a-f0-9-]+)", re.IGNORECASE)

NO_MATCH_REASONING = "No match found"
FALLBACK_REASONING = (
    "No quote for this sender; fell back to the company's most recent quote "
    "(heuristic of last resort, verify manually)"
)


@dataclass
class StrategyHit:
    """What a strategy found."""

    quote_id: str
    reasoning: str | None = None
    is_fallback: bool = False


@dataclass
class MatchStrategy:
    """One matching heuristic and the confidence its hits carry."""

    name: StrategyName
    confidence: Confidence
    reasoning: str
    find: Callable[[ParsedEmail, str], StrategyHit | None]


def find_quote_references(text: str) -> list[str]:
    """Candidate quote ids mentioned as 'Quote #<id>' in free text, in order."""
    seen: list[str] = []
    for match in QUOTE_REFERENCE.finditer(text or ""):
        candidate = match.group(1).lower().strip("-")
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


class MatchResolver:
    """Resolves emails to quotes using an ordered list of strategies."""

    def __init__(self, store: ConversationStore, quotes: QuoteLookup):
        self.store = store
        self.quotes = quotes
        self.strategies: list[MatchStrategy] = [
            MatchStrategy(
                StrategyName.THREAD,
                Confidence.HIGH,
                "Matched by Gmail thread ID",
                self._match_thread,
            ),
            MatchStrategy(
                StrategyName.SUBJECT,
                Confidence.HIGH,
                "Matched by quote ID in subject",
                self._match_subject,
            ),
            MatchStrategy(
                StrategyName.CLIENT,
                Confidence.MEDIUM,
                "Matched by client email address",
                self._match_client,
            ),
            MatchStrategy(
                StrategyName.BODY,
                Confidence.LOW,
                "Matched by quote reference in email body",
                self._match_body,
            ),
        ]

    def resolve(self, email: ParsedEmail, company_id: str) -> MatchResult:
        """
        Find the quote this email belongs to.

        Args:
            email: Decoded email
            company_id: Company whose quotes are candidates

        Returns:
            MatchResult; quote_id is None when nothing matched
        """
        for strategy in self.strategies:
            hit = strategy.find(email, company_id)
            if hit is None:
                continue

            result = MatchResult(
                quote_id=hit.quote_id,
                confidence=strategy.confidence,
                strategy=strategy.name,
                reasoning=hit.reasoning or strategy.reasoning,
                is_fallback=hit.is_fallback,
            )
            log.info(
                "email_matched",
                message_id=email.id,
                quote_id=result.quote_id,
                strategy=result.strategy.value,
                confidence=result.confidence.value,
                fallback=result.is_fallback,
            )
            return result

        return MatchResult(
            quote_id=None,
            confidence=Confidence.LOW,
            strategy=StrategyName.BODY,
            reasoning=NO_MATCH_REASONING,
        )

    def _match_thread(self, email: ParsedEmail, company_id: str) -> StrategyHit | None:
        quote_id = self.store.find_thread_quote_id(company_id, email.thread_id)
        if not quote_id:
            return None

        # The quote may have been deleted since the thread was stored
        if self.quotes.get_quote(company_id, quote_id) is None:
            log.warning(
                "thread_quote_missing",
                thread_id=email.thread_id,
                quote_id=quote_id,
            )
            return None

        return StrategyHit(quote_id)

    def _match_reference(self, text: str, company_id: str) -> StrategyHit | None:
        for candidate in find_quote_references(text):
            quote = self.quotes.get_quote(company_id, candidate)
            if quote:
                return StrategyHit(quote.id)
        return None

    def _match_subject(self, email: ParsedEmail, company_id: str) -> StrategyHit | None:
        return self._match_reference(email.subject, company_id)

    def _match_body(self, email: ParsedEmail, company_id: str) -> StrategyHit | None:
        return self._match_reference(email.body, company_id)

    def _match_client(self, email: ParsedEmail, company_id: str) -> StrategyHit | None:
        if not email.from_email:
            return None

        quote = self.quotes.find_quote_by_client_email(company_id, email.from_email)
        if quote:
            return StrategyHit(quote.id)

        domain = email.sender_domain
        if domain:
            quote = self.quotes.find_quote_by_client_domain(company_id, domain)
            if quote:
                return StrategyHit(quote.id, reasoning="Matched by client email domain")

        # TODO: gate this fallback behind a setting once the UI shows fallback matches
        quote = self.quotes.most_recent_quote(company_id)
        if quote:
            return StrategyHit(quote.id, reasoning=FALLBACK_REASONING, is_fallback=True)

        return None
