"""
Content safety filter.

Classifies text as allowed or blocked before it can reach the LLM. Stages run
in a fixed order and the first blocking stage wins:

1. Basic validation: type, length bounds, script-injection patterns.
2. Category patterns: deny-list regexes per category, each with a severity,
   plus spam heuristics (two or more indicators block).
3. Business context: legitimate objection phrasing can clear a medium/low
   pattern hit; off-topic text is rejected for objection handling.
4. External moderation: advisory gate for the configured contexts.

The raw text is never logged; only its length.
"""
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Pattern, Tuple

from crm_ai.core.config import get_settings
from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import record_content_verdict
from crm_ai.services.ai.errors import ModerationError, UpstreamError
from crm_ai.services.ai.schema import (
    ModerationReason,
    ModerationVerdict,
    Severity,
    VerdictSource,
)

logger = get_logger(__name__)

MIN_LENGTH = 3
MAX_LENGTH = 2000
OFF_TOPIC_MIN_LENGTH = 50
BUSINESS_OVERRIDE_THRESHOLD = 2

# Context used when screening generated output instead of user input.
RESPONSE_CONTEXT = "ai_response"
OBJECTION_CONTEXT = "objection_handler"
DEFAULT_MODERATED_CONTEXTS = frozenset({"objection_handler", "persona_builder"})

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"


def _words(*alternatives: str) -> Pattern:
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b", re.IGNORECASE)


MALICIOUS_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    re.compile(r"<script\b", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
]


@dataclass(frozen=True)
class CategoryRule:
    reason: ModerationReason
    severity: Severity
    patterns: Tuple[Pattern, ...]

    def matches(self, text: str) -> List[str]:
        hits = []
        for pattern in self.patterns:
            hits.extend(m.group(0).lower() for m in pattern.finditer(text))
        return hits


CATEGORY_RULES: Tuple[CategoryRule, ...] = (
    CategoryRule(
        ModerationReason.VIOLENCE,
        Severity.HIGH,
        (
            _words(r"murder\w*", r"bomb(?:s|ed|ing)?", r"weapons?", r"guns?", r"assault\w*", r"violen(?:ce|t)"),
            # Verbs that are also sales idiom ("shoot over the deck", "killing it")
            # only count when aimed at a person.
            re.compile(
                r"\b(?:kill(?:s|ed|ing)?|shoot(?:s|ing)?|stab(?:s|bed|bing)?)\s+"
                r"(?:you|him|her|them|everyone|everybody|somebody|someone|people|y'all)\b"
                r"(?!\s+(?:a|an|the|some|over|my|our|this|that|back|quick)\b)",
                re.IGNORECASE,
            ),
            re.compile(
                r"\b(?:want|wish|hope|deserve)s?\s+(?:you|him|her|them|everyone|everybody)"
                r"(?:\s+all)?\s+(?:to\s+)?(?:die|dead)\b",
                re.IGNORECASE,
            ),
            _words(r"die", r"death\s+threats?"),
            re.compile(r"\battack(?:ing)?\s+(?:you|your|them|the\s+office)\b", re.IGNORECASE),
        ),
    ),
    CategoryRule(
        ModerationReason.HATE_SPEECH,
        Severity.HIGH,
        (_words(r"nazis?", r"racists?", r"terrorists?"),),
    ),
    CategoryRule(
        ModerationReason.SEXUAL_CONTENT,
        Severity.HIGH,
        (_words(r"sex", r"sexual", r"sexy", r"porn\w*", r"nude", r"naked", r"xxx"),),
    ),
    CategoryRule(
        ModerationReason.PERSONAL_INFO,
        Severity.HIGH,
        (
            re.compile(
                r"\b(?:give|send|share|provide|tell|enter|confirm|verify|what'?s|what\s+is)\b"
                r"[^.?!]{0,40}?\b(?:social\s+security|ssn|credit\s+card|password|pin\s+number|bank\s+account)\b",
                re.IGNORECASE,
            ),
        ),
    ),
    CategoryRule(
        ModerationReason.PERSONAL_ATTACK,
        Severity.HIGH,
        (
            re.compile(
                r"\b(?:you\s+are|you'?re|you\s+people\s+are|your\s+(?:company|team|people)\s+is)\s+"
                r"(?:all\s+)?(?:so\s+|such\s+|the\s+)?"
                r"(?:stupid|dumb|idiots?|terrible|awful|worst|useless|incompetent|pathetic)\b",
                re.IGNORECASE,
            ),
            re.compile(
                r"\bi\s+(?:hate|despise|can'?t\s+stand)\s+(?:you|your\s+company|working\s+with\s+you)\b",
                re.IGNORECASE,
            ),
        ),
    ),
    CategoryRule(
        ModerationReason.PROFANITY,
        Severity.MEDIUM,
        (_words(r"fuck\w*", r"shit\w*", r"damn", r"hell", r"bitch\w*", r"assholes?",
                r"bastards?", r"crap"),),
    ),
    CategoryRule(
        ModerationReason.SPAM,
        Severity.MEDIUM,
        (
            _words(r"click\s+here", r"buy\s+now", r"free\s+money", r"make\s+money",
                   r"work\s+from\s+home", r"get\s+rich", r"viagra", r"act\s+now",
                   r"verify\s+(?:your\s+)?account", r"call\s+immediately"),
        ),
    ),
)

# Legitimate objection phrasing, one pattern per objection family.
LEGITIMATE_OBJECTION_PATTERNS: Tuple[Pattern, ...] = (
    _words(r"too\s+expensive", r"budget", r"costs?", r"pric(?:e|es|ing)", r"afford\w*", r"money", r"roi"),
    _words(r"timing", r"time", r"schedule", r"deadline", r"quarter", r"next\s+year"),
    _words(r"decision\s+maker", r"authority", r"approv\w*", r"boss", r"manager", r"board", r"procurement"),
    _words(r"need", r"require\w*", r"necessary", r"essential", r"must\s+have"),
    _words(r"trust", r"reliab\w*", r"credible", r"reputation", r"references?"),
    _words(r"competitors?", r"alternatives?", r"other\s+options", r"comparison", r"vendors?"),
    _words(r"features?", r"functionality", r"capabilit\w*", r"specifications?"),
    _words(r"support", r"help", r"assistance", r"training", r"documentation"),
    _words(r"integrat\w*", r"compatib\w*", r"existing\s+system"),
    _words(r"security", r"privacy", r"data\s+protection", r"compliance"),
)

GENERAL_BUSINESS_TERMS = _words(
    r"products?", r"services?", r"solutions?", r"company", r"contract", r"deal",
    r"implement\w*", r"team", r"software", r"platform", r"quality", r"value",
    r"customers?", r"clients?", r"sales", r"purchase", r"proposal", r"demo",
)


def business_context_score(text: str) -> int:
    """Number of distinct legitimate-objection families the text matches."""
    return sum(1 for pattern in LEGITIMATE_OBJECTION_PATTERNS if pattern.search(text))


def spam_indicators(text: str) -> List[str]:
    indicators = []
    if re.search(r"[!?]{3,}", text):
        indicators.append("excessive_punctuation")
    letters = [c for c in text if c.isalpha()]
    if len(text) > 20 and letters and text == text.upper():
        indicators.append("all_caps")
    if re.search(r"(.)\1{4,}", text):
        indicators.append("repeated_characters")
    if re.search(r"https?://\S+", text, re.IGNORECASE):
        indicators.append("contains_urls")
    if re.search(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", text):
        indicators.append("contains_email")
    return indicators


class ContentSafetyFilter:
    """Four-stage allow/block classifier for inbound (and optionally generated) text."""

    def __init__(
        self,
        moderation_client=None,
        moderated_contexts: Iterable[str] = DEFAULT_MODERATED_CONTEXTS,
        fail_mode: str = FAIL_OPEN,
        business_override_threshold: int = BUSINESS_OVERRIDE_THRESHOLD,
        max_length: int = MAX_LENGTH,
    ):
        if fail_mode not in (FAIL_OPEN, FAIL_CLOSED):
            raise ValueError(f"fail_mode must be '{FAIL_OPEN}' or '{FAIL_CLOSED}', got {fail_mode!r}")
        self.moderation_client = moderation_client
        self.moderated_contexts: FrozenSet[str] = frozenset(moderated_contexts)
        self.fail_mode = fail_mode
        self.business_override_threshold = business_override_threshold
        self.max_length = max_length

    async def filter(self, text: str, context: str = "general", enforce_length: bool = True) -> ModerationVerdict:
        """
        Return the verdict of the first blocking stage, or an allowed verdict.

        ``enforce_length=False`` drops the maximum length bound, for text that
        was assembled from stored records rather than typed by a user.
        """
        context = getattr(context, "value", context)
        try:
            verdict = await self._run_stages(text, context, enforce_length)
        except Exception as e:
            logger.error(
                "content_filter_error",
                context=context,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            verdict = ModerationVerdict.block(
                ModerationReason.FILTERING_ERROR,
                Severity.HIGH,
                VerdictSource.PATTERN,
                details=["Unable to verify content safety"],
            )

        record_content_verdict(context, verdict.allowed, verdict.reason.value)
        if not verdict.allowed:
            logger.info(
                "content_filter_blocked",
                context=context,
                reason=verdict.reason.value,
                severity=verdict.severity.value,
                source=verdict.source.value,
                text_length=len(text) if isinstance(text, str) else None,
            )
        return verdict

    async def _run_stages(self, text: str, context: str, enforce_length: bool = True) -> ModerationVerdict:
        blocked = self.validate_input(text, context, enforce_length)
        if blocked is not None:
            return blocked

        pattern_verdict = self.check_patterns(text)
        if pattern_verdict is not None and pattern_verdict.severity == Severity.HIGH:
            return pattern_verdict

        context_verdict = self.check_business_context(text, context, pattern_verdict)
        if context_verdict is not None and not context_verdict.allowed:
            return context_verdict

        if self._should_moderate(context):
            moderation_verdict = await self.moderate(text)
            if moderation_verdict is not None:
                return moderation_verdict

        return context_verdict or ModerationVerdict.allow()

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    def validate_input(
        self, text: str, context: str = "general", enforce_length: bool = True
    ) -> Optional[ModerationVerdict]:
        if not isinstance(text, str) or not text.strip():
            return ModerationVerdict.block(
                ModerationReason.INVALID_INPUT,
                Severity.HIGH,
                VerdictSource.PATTERN,
                details=["Content must be a non-empty string"],
            )

        length = len(text.strip())
        if length < MIN_LENGTH:
            return ModerationVerdict.block(
                ModerationReason.INVALID_INPUT,
                Severity.HIGH,
                VerdictSource.PATTERN,
                details=["Content too short to be meaningful"],
            )
        if enforce_length and context != RESPONSE_CONTEXT and len(text) > self.max_length:
            return ModerationVerdict.block(
                ModerationReason.INVALID_INPUT,
                Severity.HIGH,
                VerdictSource.PATTERN,
                details=["Content exceeds maximum length"],
            )

        for pattern in MALICIOUS_PATTERNS:
            if pattern.search(text):
                return ModerationVerdict.block(
                    ModerationReason.MALICIOUS_INPUT,
                    Severity.HIGH,
                    VerdictSource.PATTERN,
                    details=["Content contains potentially malicious code"],
                )
        return None

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    def check_patterns(self, text: str) -> Optional[ModerationVerdict]:
        """Most severe category hit, or None when the text is clean."""
        worst: Optional[ModerationVerdict] = None
        for rule in CATEGORY_RULES:
            hits = rule.matches(text)
            if not hits:
                continue
            verdict = ModerationVerdict.block(rule.reason, rule.severity, VerdictSource.PATTERN, details=hits)
            if rule.severity == Severity.HIGH:
                return verdict
            if worst is None or rule.severity.rank > worst.severity.rank:
                worst = verdict

        indicators = spam_indicators(text)
        if len(indicators) >= 2 and worst is None:
            worst = ModerationVerdict.block(
                ModerationReason.SPAM, Severity.MEDIUM, VerdictSource.PATTERN, details=indicators
            )
        return worst

    # ------------------------------------------------------------------
    # Stage 3
    # ------------------------------------------------------------------

    def check_business_context(
        self,
        text: str,
        context: str,
        pattern_verdict: Optional[ModerationVerdict],
    ) -> Optional[ModerationVerdict]:
        """
        Reclassify a medium/low pattern block as allowed when the text reads
        as a legitimate objection, and reject off-topic objection input.
        """
        score = business_context_score(text)

        if pattern_verdict is not None:
            if score >= self.business_override_threshold:
                logger.info(
                    "content_filter_reclassified",
                    context=context,
                    pattern_reason=pattern_verdict.reason.value,
                    business_score=score,
                )
                return ModerationVerdict.allow(
                    source=VerdictSource.BUSINESS_CONTEXT,
                    details=[f"overrode:{pattern_verdict.reason.value}"],
                )
            return pattern_verdict

        if (
            context == OBJECTION_CONTEXT
            and len(text) > OFF_TOPIC_MIN_LENGTH
            and score == 0
            and not GENERAL_BUSINESS_TERMS.search(text)
        ):
            return ModerationVerdict.block(
                ModerationReason.NOT_BUSINESS_RELATED,
                Severity.MEDIUM,
                VerdictSource.BUSINESS_CONTEXT,
                details=["Content does not appear to be a legitimate business objection"],
            )
        return None

    # ------------------------------------------------------------------
    # Stage 4
    # ------------------------------------------------------------------

    def _should_moderate(self, context: str) -> bool:
        return self.moderation_client is not None and context in self.moderated_contexts

    async def moderate(self, text: str) -> Optional[ModerationVerdict]:
        """Block verdict from the moderation endpoint, or None to let the text through."""
        try:
            result = await self.moderation_client.moderate(text)
        except ModerationError as e:
            if e.is_auth_error:
                logger.error("moderation_auth_failed", status_code=e.status_code)
                return ModerationVerdict.block(
                    ModerationReason.MODERATION_UNAVAILABLE,
                    Severity.HIGH,
                    VerdictSource.EXTERNAL_MODERATION,
                    details=["Moderation API authentication failed"],
                )
            return self._moderation_unavailable(e)
        except UpstreamError as e:
            return self._moderation_unavailable(e)

        if result.flagged:
            return ModerationVerdict.block(
                ModerationReason.EXTERNAL_MODERATION,
                Severity.HIGH,
                VerdictSource.EXTERNAL_MODERATION,
                details=list(result.categories),
            )
        return None

    def _moderation_unavailable(self, error: Exception) -> Optional[ModerationVerdict]:
        logger.warning(
            "moderation_unavailable",
            fail_mode=self.fail_mode,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self.fail_mode == FAIL_CLOSED:
            return ModerationVerdict.block(
                ModerationReason.MODERATION_UNAVAILABLE,
                Severity.HIGH,
                VerdictSource.EXTERNAL_MODERATION,
                details=["Moderation unavailable"],
            )
        return None


_content_filter: Optional[ContentSafetyFilter] = None


def get_content_filter() -> ContentSafetyFilter:
    """Global filter wired to the LLM client's moderation endpoint when enabled."""
    global _content_filter
    if _content_filter is None:
        from crm_ai.services.ai.llm_client import get_llm_client

        settings = get_settings()
        client = get_llm_client()
        moderation_client = client if settings.moderation_enabled and client.configured else None
        _content_filter = ContentSafetyFilter(
            moderation_client=moderation_client,
            fail_mode=settings.moderation_fail_mode,
        )
    return _content_filter
