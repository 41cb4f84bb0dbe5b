"""Multi-factor ranking of the aggregated corpus.

final = clamp(base + context boosts - penalties, 0, ceiling) / ceiling,
where ceiling = 1 + sum(boost weights), followed by a diversity pass over
the top-K and dense rank/tier assignment.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from topicmesh.models.research import (
    AggregatedResult,
    ResearchContext,
    ScoreBreakdown,
    ScoredResult,
    Tier,
    UserLevel,
)
from topicmesh.tools.web_utils import extract_domain, tokenize

DEFAULT_WEIGHTS = {
    "relevance": 0.20,
    "confidence": 0.12,
    "quality": 0.12,
    "recency": 0.08,
    "uniqueness": 0.08,
    "source_reliability": 0.10,
    "engagement": 0.05,
    "credibility": 0.10,
    "authority": 0.08,
    "factual_accuracy": 0.07,
}

DEFAULT_BOOSTS = {
    "user_level": 0.15,
    "learning_style": 0.10,
    "topic_match": 0.20,
    "content_type": 0.10,
    "domain_expertise": 0.05,
    "peer_validation": 0.05,
}

DEFAULT_PENALTIES = {
    "duplicate": 0.20,
    "low_quality": 0.25,
    "outdated": 0.15,
    "suspicious": 0.20,
    "bias": 0.10,
}

DEFAULT_TIERS = ((Tier.EXCELLENT, 0.8), (Tier.GOOD, 0.6), (Tier.FAIR, 0.4), (Tier.POOR, 0.0))

AUTHORITATIVE_DOMAINS = {
    "wikipedia.org", "britannica.com", "nature.com", "science.org", "arxiv.org", "ieee.org", "acm.org",
    "nih.gov", "who.int", "mit.edu", "stanford.edu", "harvard.edu", "ox.ac.uk", "cam.ac.uk",
}

LEVEL_INDICATORS = {
    UserLevel.BEGINNER: ("beginner", "introduction", "basics", "getting started", "simple", "for dummies", "101"),
    UserLevel.INTERMEDIATE: ("guide", "tutorial", "practical", "how to", "overview", "examples"),
    UserLevel.ADVANCED: ("advanced", "in-depth", "deep dive", "research", "theory", "proof", "expert"),
}

LEARNING_STYLE_TYPES = {
    "visual": {"video", "interactive"},
    "auditory": {"video"},
    "reading": {"article", "academic", "discussion"},
    "interactive": {"interactive", "discussion"},
}

SUSPICIOUS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bclick here\b",
        r"you won'?t believe",
        r"\b100% (?:guaranteed|free)\b",
        r"\bbuy now\b",
        r"\bmiracle\b",
        r"\bget rich\b",
        r"\blimited time offer\b",
        r"\bdoctors hate\b",
    )
]

BIAS_MARKERS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\beveryone knows\b",
        r"\bobviously\b",
        r"\bundeniabl[ey]\b",
        r"\bthe truth (?:they|about)\b",
        r"\bmainstream media\b",
        r"\btotally (?:wrong|useless)\b",
        r"\bonly idiots\b",
    )
]

EXPERTISE_MARKERS = re.compile(
    r"\b(peer[- ]reviewed|professor|ph\.?d|journal|university|institute|researchers?|proceedings)\b",
    re.IGNORECASE,
)
HEDGE_MARKERS = re.compile(r"\b(rumou?r|allegedly|unconfirmed|some say|i think|probably)\b", re.IGNORECASE)
EVIDENCE_MARKERS = re.compile(r"(\b\d{4}\b|\d+(?:\.\d+)?%|\bdoi\b|\bet al\b|\[\d+\]|\bstudy\b|\bdata\b)", re.IGNORECASE)


@dataclass
class ScoringConfig:
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    boosts: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_BOOSTS))
    penalties: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_PENALTIES))
    tiers: tuple[tuple[Tier, float], ...] = DEFAULT_TIERS
    relevance_threshold: float = 0.1
    diversity_top_k: int = 10
    domain_diversity_bonus: float = 0.02
    engine_diversity_bonus: float = 0.01

    def __post_init__(self) -> None:
        for label, values, required in (
            ("weights", self.weights, DEFAULT_WEIGHTS),
            ("boosts", self.boosts, DEFAULT_BOOSTS),
            ("penalties", self.penalties, DEFAULT_PENALTIES),
        ):
            missing = set(required) - set(values)
            if missing:
                raise ValueError(f"Missing scoring {label}: {sorted(missing)}")
        if abs(sum(self.weights.values()) - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0, got {sum(self.weights.values()):.4f}")
        if not self.tiers:
            raise ValueError("At least one tier is required")
        thresholds = [t for _, t in self.tiers]
        if thresholds != sorted(thresholds, reverse=True) or len(set(thresholds)) != len(thresholds):
            raise ValueError("Tier thresholds must be strictly decreasing")
        if thresholds[-1] > 0.0:
            raise ValueError("Lowest tier threshold must be 0.0 so every score gets a tier")

    @property
    def ceiling(self) -> float:
        return 1.0 + sum(self.boosts.values())


class ResultScorer:
    def __init__(self, config: ScoringConfig | None = None):
        self.config = config or ScoringConfig()

    def topic_overlap(self, result: AggregatedResult, topic: str) -> float:
        topic_terms = tokenize(topic)
        if not topic_terms:
            return 1.0
        text_terms = tokenize(f"{result.title} {result.snippet}")
        return len(topic_terms & text_terms) / len(topic_terms)

    def score(self, result: AggregatedResult, context: ResearchContext | None = None, topic: str = "") -> ScoredResult:
        context = context or ResearchContext()
        factors = self._factors(result)
        base = sum(self.config.weights[name] * value for name, value in factors.items())
        boosts = self._context_boosts(result, context, topic)
        penalties = self._penalties(result, context, topic)
        raw = base + sum(boosts.values()) - sum(penalties.values())
        ceiling = self.config.ceiling
        final = max(0.0, min(raw, ceiling)) / ceiling
        breakdown = ScoreBreakdown(
            base=round(base, 4),
            context_boosts=round(sum(boosts.values()), 4),
            penalties=round(sum(penalties.values()), 4),
            adjustments=0.0,
            factors={**factors, **{f"boost_{k}": v for k, v in boosts.items()}, **{f"penalty_{k}": v for k, v in penalties.items()}},
        )
        return ScoredResult(result=result, final_score=round(final, 4), score_breakdown=breakdown, tier=self.tier_for(final))

    def rank(
        self,
        results: list[AggregatedResult],
        context: ResearchContext | None = None,
        topic: str = "",
    ) -> list[ScoredResult]:
        """Filter irrelevant results, score, apply diversity, assign dense ranks."""
        relevant = [r for r in results if not topic or self.topic_overlap(r, topic) >= self.config.relevance_threshold]
        scored = [self.score(r, context, topic) for r in relevant]
        scored.sort(key=lambda s: (s.final_score, s.result.relevance), reverse=True)
        self._apply_diversity(scored)
        scored.sort(key=lambda s: (s.final_score, s.result.relevance), reverse=True)
        for position, item in enumerate(scored, start=1):
            item.rank = position
            item.tier = self.tier_for(item.final_score)
        return scored

    def tier_for(self, score: float) -> Tier:
        for tier, threshold in self.config.tiers:
            if score >= threshold:
                return tier
        return self.config.tiers[-1][0]

    def _factors(self, result: AggregatedResult) -> dict[str, float]:
        return {
            "relevance": result.relevance,
            "confidence": result.confidence,
            "quality": result.quality.content_quality,
            "recency": result.quality.recency,
            "uniqueness": result.quality.uniqueness,
            "source_reliability": result.quality.source_reliability,
            "engagement": result.quality.engagement,
            "credibility": self._credibility(result),
            "authority": self._authority(result),
            "factual_accuracy": self._factual_accuracy(result),
        }

    def _credibility(self, result: AggregatedResult) -> float:
        domain = extract_domain(result.url)
        score = 0.5
        if result.url.startswith("https://"):
            score += 0.1
        if domain.endswith((".edu", ".gov")) or ".ac." in domain:
            score += 0.25
        elif domain.endswith(".org"):
            score += 0.1
        if result.metadata.get("peer_reviewed"):
            score += 0.15
        return min(score, 1.0)

    def _authority(self, result: AggregatedResult) -> float:
        domain = extract_domain(result.url)
        if any(domain == d or domain.endswith(f".{d}") for d in AUTHORITATIVE_DOMAINS):
            return 1.0
        citations = result.metadata.get("citation_count") or 0
        if isinstance(citations, int) and citations >= 100:
            return 0.9
        if isinstance(citations, int) and citations > 0:
            return 0.7
        return 0.4 + 0.1 * min(len(result.agents) - 1, 3)

    def _factual_accuracy(self, result: AggregatedResult) -> float:
        text = f"{result.title} {result.snippet}"
        evidence = len(EVIDENCE_MARKERS.findall(text))
        hedges = len(HEDGE_MARKERS.findall(text))
        return max(0.0, min(1.0, 0.5 + 0.1 * min(evidence, 4) - 0.15 * hedges))

    def _context_boosts(self, result: AggregatedResult, context: ResearchContext, topic: str) -> dict[str, float]:
        weights = self.config.boosts
        text = f"{result.title} {result.snippet}".lower()
        content_type = str(result.metadata.get("content_type") or "article")

        level_hits = sum(1 for marker in LEVEL_INDICATORS[context.user_level] if marker in text)
        difficulty = result.metadata.get("difficulty")
        level_match = 1.0 if difficulty == context.user_level.value else min(level_hits / 2, 1.0)

        style_match = 0.0
        if context.learning_style:
            preferred = LEARNING_STYLE_TYPES.get(context.learning_style, set())
            style_match = 1.0 if content_type in preferred else 0.0

        type_match = 1.0 if context.content_types and content_type in context.content_types else 0.0

        expertise = 1.0 if EXPERTISE_MARKERS.search(text) or result.metadata.get("peer_reviewed") else 0.0
        if context.domain and context.domain.lower() in text:
            expertise = 1.0

        peer_validation = min((len(result.agents) - 1) / 2, 1.0)
        if (result.metadata.get("citation_count") or 0) >= 10 or (result.metadata.get("upvotes") or 0) >= 50:
            peer_validation = 1.0

        return {
            "user_level": round(weights["user_level"] * level_match, 4),
            "learning_style": round(weights["learning_style"] * style_match, 4),
            "topic_match": round(weights["topic_match"] * (self.topic_overlap(result, topic) if topic else 0.0), 4),
            "content_type": round(weights["content_type"] * type_match, 4),
            "domain_expertise": round(weights["domain_expertise"] * expertise, 4),
            "peer_validation": round(weights["peer_validation"] * peer_validation, 4),
        }

    def _penalties(self, result: AggregatedResult, context: ResearchContext, topic: str) -> dict[str, float]:
        weights = self.config.penalties
        text = f"{result.title} {result.snippet}"
        penalties: dict[str, float] = {}
        if result.duplicate_count > 2:
            penalties["duplicate"] = weights["duplicate"] * min(result.duplicate_count / 10, 1.0)
        if result.quality.content_quality < 0.4:
            penalties["low_quality"] = weights["low_quality"]
        if context.prefer_recent and result.quality.recency < 0.3:
            penalties["outdated"] = weights["outdated"]
        if any(p.search(text) for p in SUSPICIOUS_PATTERNS):
            penalties["suspicious"] = weights["suspicious"]
        bias_hits = sum(1 for p in BIAS_MARKERS if p.search(text))
        if bias_hits:
            penalties["bias"] = weights["bias"] * min(bias_hits, 2) / 2
        return {k: round(v, 4) for k, v in penalties.items()}

    def _apply_diversity(self, scored: list[ScoredResult]) -> None:
        seen_domains: set[str] = set()
        seen_engines: set[str] = set()
        for item in scored[: self.config.diversity_top_k]:
            bonus = 0.0
            domain = extract_domain(item.result.url)
            if domain and domain not in seen_domains:
                seen_domains.add(domain)
                bonus += self.config.domain_diversity_bonus
            new_engines = [e for e in item.result.engines if e not in seen_engines]
            if new_engines:
                seen_engines.update(new_engines)
                bonus += self.config.engine_diversity_bonus
            if bonus:
                item.final_score = round(min(1.0, item.final_score + bonus), 4)
                item.score_breakdown = ScoreBreakdown(
                    base=item.score_breakdown.base,
                    context_boosts=item.score_breakdown.context_boosts,
                    penalties=item.score_breakdown.penalties,
                    adjustments=round(bonus, 4),
                    factors=item.score_breakdown.factors,
                )
