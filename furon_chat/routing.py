"""
Intent Classification and Routing
=================================

Cheap heuristic triage of a user message into intents, followed by a
deterministic walk over hand-ordered provider priority lists.

The routing engine only ever chooses among providers the caller already
holds credentials for, so a false-positive intent just changes preference
order, never capability. No scoring, no randomization: the first listed
available provider wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from .providers import DEFAULT_REGISTRY, ChatMode, ProviderRegistry

logger = logging.getLogger(__name__)


class Intent(Enum):
    """Semantic intents detected in a user message"""

    MATH = "math"
    CODE = "code"
    RESEARCH = "research"
    MULTILINGUAL = "multilingual"
    REASONING = "reasoning"
    AGENTIC = "agentic"
    UNCENSORED = "uncensored"
    GENERAL = "general"


class IntentClassifier:
    """Classify user messages into intents"""

    # Tested in this order; the order is the routing preference order.
    # Keyword patterns run against the lower-cased message, raw patterns
    # against the message as typed.
    INTENT_PATTERNS: tuple[tuple[Intent, tuple[str, ...], tuple[str, ...]], ...] = (
        (
            Intent.CODE,
            (r"\b(code|function|class|api|debug|refactor|typescript|javascript|python|react|component)\b",),
            (r"```|const |function |import |export ",),
        ),
        (
            Intent.RESEARCH,
            (
                r"\b(research|study|paper|citation|source|evidence|according to|findings|data shows)\b",
                r"\b(latest|recent|current|2024|2025)\b",
            ),
            (),
        ),
        (
            Intent.MULTILINGUAL,
            (r"\b(translate|translation|multilingual|language)\b",),
            (
                r"[\u4e00-\u9fff]",  # Chinese
                r"[\u3040-\u309f\u30a0-\u30ff]",  # Japanese
                r"[\uac00-\ud7af]",  # Korean
                r"[\u0600-\u06ff]",  # Arabic
            ),
        ),
        (
            Intent.REASONING,
            (r"\b(explain|why|how does|reasoning|logic|analyze|compare|evaluate|pros and cons)\b",),
            (),
        ),
        (
            Intent.AGENTIC,
            (r"\b(step by step|workflow|automate|agent|task|execute|run|schedule)\b",),
            (),
        ),
        (
            Intent.UNCENSORED,
            (r"\b(uncensored|controversial|opinion|debate|politics|religion)\b",),
            (),
        ),
    )

    MATH_KEYWORDS = re.compile(
        r"\b(math|equation|calculate|derivative|integral|algebra|geometry|proof|theorem|formula)\b",
        re.ASCII,
    )
    # Any digit or operator symbol counts once the message is long enough
    MATH_SYMBOLS = re.compile(r"[\d+\-*/^=()]", re.ASCII)
    MATH_SYMBOL_MIN_LENGTH = 10

    _compiled: tuple[tuple[Intent, tuple[re.Pattern[str], ...], tuple[re.Pattern[str], ...]], ...] = tuple(
        (
            intent,
            tuple(re.compile(p, re.ASCII) for p in keyword_patterns),
            tuple(re.compile(p) for p in raw_patterns),
        )
        for intent, keyword_patterns, raw_patterns in INTENT_PATTERNS
    )

    @classmethod
    def classify(cls, message: str) -> list[Intent]:
        """
        Classify a message into intents.

        Returns intents in detection order, without duplicates. If nothing
        fires the result is [Intent.GENERAL].
        """
        message = message or ""
        lower = message.lower()
        intents: list[Intent] = []

        if cls.MATH_KEYWORDS.search(lower) or (
            cls.MATH_SYMBOLS.search(message)
            and len(message) > cls.MATH_SYMBOL_MIN_LENGTH
        ):
            intents.append(Intent.MATH)

        for intent, keyword_patterns, raw_patterns in cls._compiled:
            if any(p.search(lower) for p in keyword_patterns) or any(
                p.search(message) for p in raw_patterns
            ):
                intents.append(intent)

        return intents or [Intent.GENERAL]


@dataclass(frozen=True)
class RoutingDecision:
    """Result of a smart routing pass"""

    provider: str
    model_id: str
    intents: tuple[Intent, ...]
    # "intent", "mode" or "fallback"
    reason: str


class RoutingEngine:
    """Select a provider/model from the credentialed set"""

    INTENT_PRIORITIES: dict[Intent, tuple[str, ...]] = {
        Intent.MATH: ("deepseek", "openai", "anthropic", "qwen"),
        Intent.CODE: ("anthropic", "deepseek", "mistral", "openai"),
        Intent.RESEARCH: ("perplexity", "gemini", "anthropic", "openai"),
        Intent.MULTILINGUAL: ("qwen", "mistral", "gemini", "kimi"),
        Intent.REASONING: ("deepseek", "anthropic", "openai", "mistral"),
        Intent.AGENTIC: ("kimi", "anthropic", "openai", "deepseek"),
        Intent.UNCENSORED: ("gab", "grok", "openrouter"),
        Intent.GENERAL: ("openai", "anthropic", "gemini", "grok"),
    }

    MODE_PRIORITIES: dict[ChatMode, tuple[str, ...]] = {
        ChatMode.INNOVATION: ("grok", "openai", "anthropic", "deepseek", "gemini"),
        ChatMode.CODE: ("anthropic", "deepseek", "mistral", "openai", "gemini"),
        ChatMode.GENERAL: ("openai", "anthropic", "gemini", "grok", "qwen"),
        ChatMode.RESEARCH: ("perplexity", "gemini", "anthropic", "openai", "deepseek"),
    }

    # Kept for select_basic; differs from MODE_PRIORITIES in innovation order
    BASIC_MODE_PRIORITIES: dict[ChatMode, tuple[str, ...]] = {
        ChatMode.INNOVATION: ("grok", "openai", "anthropic", "gemini", "deepseek"),
        ChatMode.CODE: ("anthropic", "deepseek", "mistral", "openai", "gemini"),
        ChatMode.GENERAL: ("openai", "anthropic", "gemini", "grok", "qwen"),
        ChatMode.RESEARCH: ("perplexity", "gemini", "anthropic", "openai", "deepseek"),
    }

    def __init__(
        self,
        registry: ProviderRegistry = DEFAULT_REGISTRY,
        classifier: type[IntentClassifier] = IntentClassifier,
    ) -> None:
        self.registry = registry
        self.classifier = classifier

    @staticmethod
    def _first_available(
        priorities: Sequence[str], available: Sequence[str]
    ) -> str | None:
        for provider in priorities:
            if provider in available:
                return provider
        return None

    def select_smart(
        self,
        message: str,
        mode: ChatMode | str,
        available_providers: Sequence[str],
    ) -> RoutingDecision | None:
        """
        Pick a provider and its first model for a message.

        Intent priority lists are walked in detection order, then the mode
        list, then the first available provider. Returns None only when
        available_providers is empty.
        """
        if not available_providers:
            return None

        mode = ChatMode.parse(mode)
        intents = tuple(self.classifier.classify(message))

        for intent in intents:
            priorities = self.INTENT_PRIORITIES.get(
                intent, self.INTENT_PRIORITIES[Intent.GENERAL]
            )
            provider = self._first_available(priorities, available_providers)
            if provider:
                return self._decide(provider, intents, "intent")

        provider = self._first_available(
            self.MODE_PRIORITIES[mode], available_providers
        )
        if provider:
            return self._decide(provider, intents, "mode")

        return self._decide(available_providers[0], intents, "fallback")

    def select_basic(
        self, mode: ChatMode | str, available_providers: Sequence[str]
    ) -> str | None:
        """Mode-only provider selection without intent detection."""
        if not available_providers:
            return None

        mode = ChatMode.parse(mode)
        provider = self._first_available(
            self.BASIC_MODE_PRIORITIES[mode], available_providers
        )
        return provider or available_providers[0]

    def _decide(
        self, provider: str, intents: tuple[Intent, ...], reason: str
    ) -> RoutingDecision:
        decision = RoutingDecision(
            provider=provider,
            model_id=self.registry.default_model_for(provider),
            intents=intents,
            reason=reason,
        )
        logger.info(
            "Routed to %s/%s (%s; intents=%s)",
            decision.provider,
            decision.model_id or "?",
            reason,
            [i.value for i in intents],
        )
        return decision


_default_engine = RoutingEngine()


def select_provider_smart(
    message: str, mode: ChatMode | str, available_providers: Sequence[str]
) -> RoutingDecision | None:
    return _default_engine.select_smart(message, mode, available_providers)


def select_provider(
    mode: ChatMode | str, available_providers: Sequence[str]
) -> str | None:
    return _default_engine.select_basic(mode, available_providers)
