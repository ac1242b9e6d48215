"""Model router — maps a model hint to the provider that serves it.

Dispatch is a declarative, ordered table of ``(matcher, provider_id)`` rules;
the first matching rule wins, otherwise the default provider is used.  The
router also orders the fallback candidates for a request.

When a request names no model the router can pick one itself: the latest
user turn is scored for complexity, the score maps to a ``ModelTier``, and
the first model of that tier whose provider is usable wins.  Lower tiers are
tried before higher ones when the chosen tier has no usable provider.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Collection, Iterable, Mapping, Sequence

import structlog

from relay.domain.enums import ModelTier
from relay.shared.providers.types import ProviderSpec

logger = structlog.get_logger(__name__)

ModelMatcher = Callable[[str], bool]


# ── Matchers ─────────────────────────────────────────────────
def contains(*needles: str) -> ModelMatcher:
    lowered = tuple(n.lower() for n in needles)
    return lambda model: any(n in model.lower() for n in lowered)


def prefix(*prefixes: str) -> ModelMatcher:
    lowered = tuple(p.lower() for p in prefixes)
    return lambda model: model.lower().startswith(lowered)


def pattern(regex: str) -> ModelMatcher:
    compiled = re.compile(regex, re.IGNORECASE)
    return lambda model: compiled.search(model) is not None


@dataclass(frozen=True)
class RoutingRule:
    matcher: ModelMatcher
    provider_id: str


DEFAULT_RULES: tuple[RoutingRule, ...] = (
    RoutingRule(pattern(r"^(gpt|o1|o3)"), "openai"),
    RoutingRule(contains("claude"), "anthropic"),
    RoutingRule(contains("llama", "groq"), "groq"),
    RoutingRule(contains("grok"), "xai"),
    RoutingRule(contains("sonar"), "perplexity"),
    RoutingRule(contains("gemini"), "google"),
)


# ── Complexity scoring ───────────────────────────────────────
_TECHNICAL_TERMS = (
    "algorithm", "function", "implementation", "integration", "architecture",
    "framework", "optimization", "database", "interface", "recursion",
    "middleware", "scalability", "infrastructure", "asynchronous", "parallelization",
)
_DEPTH_TERMS = (
    "why", "how", "explain", "analyze", "compare",
    "evaluate", "synthesize", "examine", "investigate",
)
_TECHNICAL_RE = tuple(re.compile(rf"\b{t}\b", re.IGNORECASE) for t in _TECHNICAL_TERMS)
_DEPTH_RE = tuple(re.compile(rf"\b{t}\b", re.IGNORECASE) for t in _DEPTH_TERMS)
_CODE_RE = re.compile(r"\b(code|function|program|algorithm|debug)\b", re.IGNORECASE)
_SENTENCE_END_RE = re.compile(r"[.!?]+")


def assess_complexity(query: str) -> float:
    """Score ``query`` in [0, 1].

    Four capped contributions: length (0.2), words per sentence (0.2),
    technical vocabulary (0.3) and analytical question words (0.3).
    """
    word_count = len(query.split())
    if word_count == 0:
        return 0.0
    sentences = len(_SENTENCE_END_RE.findall(query)) + 1
    technical = sum(1 for r in _TECHNICAL_RE if r.search(query))
    depth = sum(1 for r in _DEPTH_RE if r.search(query))

    score = (
        min(word_count / 100, 1.0) * 0.2
        + min(word_count / sentences / 20, 1.0) * 0.2
        + min(technical / 3, 1.0) * 0.3
        + min(depth / 2, 1.0) * 0.3
    )
    return min(max(score, 0.0), 1.0)


def tier_for(complexity: float, *, code: bool = False) -> ModelTier:
    if complexity > 0.8:
        return ModelTier.SUPERIOR
    if complexity > 0.6:
        return ModelTier.ADVANCED
    if complexity > 0.4 or code:
        return ModelTier.STANDARD
    return ModelTier.BASELINE


DEFAULT_TIER_MODELS: Mapping[ModelTier, tuple[str, ...]] = {
    ModelTier.BASELINE: (
        "gpt-4o-mini",
        "claude-3-5-haiku-latest",
        "llama-3.1-8b-instant",
        "gemini-2.0-flash-lite",
    ),
    ModelTier.STANDARD: (
        "gpt-4o",
        "claude-3-5-sonnet-latest",
        "llama-3.3-70b-versatile",
        "gemini-2.0-flash",
        "sonar",
    ),
    ModelTier.ADVANCED: (
        "gpt-4.1",
        "claude-3-7-sonnet-latest",
        "sonar-pro",
        "grok-2-latest",
    ),
    ModelTier.SUPERIOR: ("o1", "gemini-2.5-pro"),
}

_TIER_ORDER = (ModelTier.BASELINE, ModelTier.STANDARD, ModelTier.ADVANCED, ModelTier.SUPERIOR)


@dataclass(frozen=True)
class ModelSelection:
    model: str
    provider_id: str
    tier: ModelTier
    complexity: float
    reason: str


class ModelRouter:
    """Selects the provider for a model and orders the fallback chain."""

    def __init__(
        self,
        providers: Sequence[ProviderSpec],
        *,
        rules: Iterable[RoutingRule] = DEFAULT_RULES,
        default_provider: str = "openai",
        tier_models: Mapping[ModelTier, Sequence[str]] = DEFAULT_TIER_MODELS,
    ) -> None:
        self._providers = {p.provider_id: p for p in providers}
        self._rules = tuple(rules)
        self._default = default_provider
        self._tier_models = {tier: tuple(models) for tier, models in tier_models.items()}

    @property
    def default_provider(self) -> str:
        return self._default

    def provider_for_model(self, model: str) -> str:
        """Return the provider id serving ``model`` ("" routes to the default)."""
        if model:
            for rule in self._rules:
                if rule.matcher(model):
                    return rule.provider_id
        return self._default

    def fallback_order(self, model: str) -> list[ProviderSpec]:
        """Known providers, the model's own provider first, then by priority."""
        primary = self.provider_for_model(model)
        ordered = sorted(self._providers.values(), key=lambda p: p.priority)
        head = [p for p in ordered if p.provider_id == primary]
        if not head:
            logger.debug("routed_provider_unknown", model=model, provider=primary)
        return head + [p for p in ordered if p.provider_id != primary]

    def get(self, provider_id: str) -> ProviderSpec | None:
        return self._providers.get(provider_id)

    @property
    def providers(self) -> list[ProviderSpec]:
        return sorted(self._providers.values(), key=lambda p: p.priority)

    # ── Model selection ──────────────────────────────────────
    def select_model(self, query: str, usable: Collection[str]) -> ModelSelection | None:
        """Pick a model for ``query`` among providers in ``usable``.

        Returns None when no tier lists a model served by a usable provider;
        the caller then keeps the default routing.
        """
        complexity = assess_complexity(query)
        code = _CODE_RE.search(query) is not None
        tier = tier_for(complexity, code=code)

        for candidate_tier in _tier_search_order(tier):
            for model in self._tier_models.get(candidate_tier, ()):
                provider_id = self.provider_for_model(model)
                if provider_id not in usable:
                    continue
                reason = f"complexity {complexity:.2f} -> {tier.value}"
                if code:
                    reason += " (code)"
                if candidate_tier != tier:
                    reason += f", no usable {tier.value} model, using {candidate_tier.value}"
                selection = ModelSelection(
                    model=model,
                    provider_id=provider_id,
                    tier=candidate_tier,
                    complexity=complexity,
                    reason=reason,
                )
                logger.info(
                    "model_selected",
                    model=model,
                    provider=provider_id,
                    tier=candidate_tier.value,
                    complexity=round(complexity, 3),
                    reason=reason,
                )
                return selection

        logger.debug("model_selection_skipped", tier=tier.value, usable=sorted(usable))
        return None


def _tier_search_order(tier: ModelTier) -> list[ModelTier]:
    """The tier itself, then cheaper tiers downwards, then stronger ones upwards."""
    index = _TIER_ORDER.index(tier)
    lower = list(reversed(_TIER_ORDER[:index]))
    higher = list(_TIER_ORDER[index + 1:])
    return [tier, *lower, *higher]
