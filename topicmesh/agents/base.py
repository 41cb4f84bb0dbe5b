from __future__ import annotations

import asyncio
import re
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from itertools import zip_longest
from typing import Any, Protocol

from loguru import logger

from topicmesh.models.research import AgentResult, AgentStatus, ResearchContext, SearchResult, UserLevel
from topicmesh.services.errors import AgentExecutionError, ResearchCancelledError, SearchError
from topicmesh.services.reliability import CancellationToken, ResilientSearch
from topicmesh.tools.searxng_search import SearchOptions
from topicmesh.tools.web_utils import clean_content, is_valid_url, normalize_url, tokenize

LEVEL_TERMS: dict[UserLevel, tuple[str, ...]] = {
    UserLevel.BEGINNER: ("basics", "introduction", "simple"),
    UserLevel.INTERMEDIATE: ("guide", "tutorial", "overview"),
    UserLevel.ADVANCED: ("advanced", "detailed", "comprehensive"),
}

PADDING_TERMS = ("overview", "explained", "examples", "key concepts")

STOPWORDS = {
    "the", "and", "for", "with", "from", "that", "this", "what", "how", "why", "are", "was",
    "your", "you", "can", "will", "into", "about", "its", "their", "have", "has", "more",
    "all", "new", "use", "using", "used", "our", "not", "but", "best", "top", "most",
}


@dataclass(frozen=True, slots=True)
class AgentSearchConfig:
    """Engines, query shaping and result filtering for one agent."""
    name: str
    description: str
    engines: tuple[str, ...] = ()
    categories: tuple[str, ...] = ("general",)
    language: str = "en"
    safesearch: int = 1
    time_range: str | None = None
    prefixes: tuple[str, ...] = ()
    suffixes: tuple[str, ...] = ()
    exclude_terms: tuple[str, ...] = ()
    include_terms: tuple[str, ...] = ()
    min_content_length: int = 100
    max_results: int = 20
    score_threshold: float = 0.3
    required_fields: tuple[str, ...] = ("title", "url")
    default_relevance: float = 0.7
    queries_per_run: int = 3
    min_queries: int = 6
    max_queries: int = 10

    def search_options(self, page: int = 1) -> SearchOptions:
        return SearchOptions(
            engines=list(self.engines),
            categories=list(self.categories),
            language=self.language,
            page=page,
            time_range=self.time_range,
            safesearch=self.safesearch,
        )


def optimize_queries(topic: str, config: AgentSearchConfig, context: ResearchContext | None = None) -> list[str]:
    """Expand a topic into query variants for one agent.

    The base topic comes first, followed by prefix, suffix, level and
    include-term phrasings interleaved so that the leading variants already
    cover different angles.
    """
    base = " ".join(topic.split())
    if not base:
        return []
    level = context.user_level if context else UserLevel.INTERMEDIATE

    prefixed = [f"{p} {base}" for p in config.prefixes]
    suffixed = [f"{base} {s}" for s in config.suffixes]
    leveled = [f"{base} {t}" for t in LEVEL_TERMS[level]]
    included = [f"{base} {t}" for t in config.include_terms[:2]]

    candidates = [base]
    for group in zip_longest(prefixed, suffixed, leveled, included):
        candidates.extend(q for q in group if q)
    candidates.extend(f"{base} {t}" for t in PADDING_TERMS)

    seen: set[str] = set()
    queries: list[str] = []
    for query in candidates:
        key = query.lower()
        if key in seen:
            continue
        seen.add(key)
        queries.append(query)
    limit = max(config.min_queries, min(config.max_queries, len(queries) - len(PADDING_TERMS)))
    return queries[:limit]


def _field_value(result: SearchResult, name: str) -> Any:
    if name == "content":
        return result.snippet
    if name in ("title", "url", "snippet"):
        return getattr(result, name)
    return result.metadata.get(name)


def filter_results(results: list[SearchResult], config: AgentSearchConfig) -> list[SearchResult]:
    """Apply required fields, URL validity, content length, score threshold and exclusions, then dedupe and cap."""
    exclude = [re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE) for term in config.exclude_terms]
    best: dict[str, SearchResult] = {}
    for result in results:
        if any(not _field_value(result, f) for f in config.required_fields):
            continue
        if not is_valid_url(result.url):
            continue
        if len(f"{result.title} {result.snippet}".strip()) < config.min_content_length:
            continue
        if result.relevance_score < config.score_threshold:
            continue
        if any(p.search(result.title) or p.search(result.snippet) for p in exclude):
            continue
        key = normalize_url(result.url)
        current = best.get(key)
        if current is None or result.relevance_score > current.relevance_score:
            best[key] = result
    ranked = sorted(best.values(), key=lambda r: r.relevance_score, reverse=True)
    return ranked[: config.max_results]


def parse_published(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class FallbackStrategy(Protocol):
    """Degraded query plan used when none of an agent's queries succeed."""

    name: str
    relevance_penalty: float
    max_results: int | None

    def queries(self, topic: str) -> list[str]: ...

    def options(self, config: AgentSearchConfig) -> SearchOptions: ...


class SimplifyingFallback:
    """Escalating rewrites: drop jargon, shorten, then ask for a beginner guide."""

    name = "simplify"
    relevance_penalty = 0.8
    max_results: int | None = None
    jargon = re.compile(r"\b(advanced|complex|technical)\b", re.IGNORECASE)

    def queries(self, topic: str) -> list[str]:
        base = " ".join(topic.split())
        candidates = [
            self.jargon.sub("basic", base),
            " ".join(base.split()[:3]),
            f"{base} beginner guide overview",
        ]
        out: list[str] = []
        for query in candidates:
            if query and query.lower() != base.lower() and query not in out:
                out.append(query)
        return out

    def options(self, config: AgentSearchConfig) -> SearchOptions:
        return config.search_options()


class GeneralizedQueryFallback:
    """Broad general-web query for a specialized agent, few results, heavy penalty."""

    name = "generalize"
    relevance_penalty = 0.6
    max_results: int | None = 3

    def __init__(self, general_config: AgentSearchConfig):
        self.general_config = general_config

    def queries(self, topic: str) -> list[str]:
        return [f"{' '.join(topic.split())} general information overview"]

    def options(self, config: AgentSearchConfig) -> SearchOptions:
        return self.general_config.search_options()


class BaseResearchAgent:
    """One search strategy: shape queries, search, enrich, filter, summarize.

    Subclasses override ``enrich`` to attach domain metadata and may
    override ``sort_key`` to re-order their filtered results.
    """

    name: str = "base"
    critical: bool = False

    def __init__(
        self,
        config: AgentSearchConfig,
        search: ResilientSearch,
        *,
        fallback: FallbackStrategy | None = None,
        batch_size: int = 3,
    ):
        self.config = config
        self.search = search
        self.fallback = fallback
        self.batch_size = max(1, batch_size)

    def optimize(self, topic: str, context: ResearchContext | None = None) -> list[str]:
        return optimize_queries(topic, self.config, context)

    def enrich(self, raw: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        return metadata

    def sort_key(self, result: SearchResult) -> float:
        return result.relevance_score

    async def execute(
        self,
        topic: str,
        context: ResearchContext | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AgentResult:
        queries = self.optimize(topic, context)[: self.config.queries_per_run]
        try:
            collected, successes, errors = await self._run_queries(queries, cancel_token)
            used_fallback = False
            if successes == 0:
                collected = await self._run_fallback(topic, errors, cancel_token)
                used_fallback = True
                results = sorted(collected, key=lambda r: r.relevance_score, reverse=True)
            else:
                results = filter_results(collected, self.config)
        except ResearchCancelledError:
            raise
        except (SearchError, AgentExecutionError) as exc:
            logger.warning(f"Agent {self.name} failed for '{topic}': {exc}")
            return AgentResult(
                agent_name=self.name,
                topic=topic,
                status=AgentStatus.ERROR,
                error=str(exc),
                queries=queries,
            )

        results.sort(key=self.sort_key, reverse=True)
        if used_fallback or errors:
            status = AgentStatus.PARTIAL
        else:
            status = AgentStatus.SUCCESS
        return AgentResult(
            agent_name=self.name,
            topic=topic,
            results=results,
            summary=self.summarize(topic, results),
            subtopics=self.propose_subtopics(topic, results),
            status=status,
            error="; ".join(errors) if errors else None,
            queries=queries,
            successful_queries=successes,
            used_fallback=used_fallback,
        )

    async def _run_queries(
        self,
        queries: list[str],
        cancel_token: CancellationToken | None,
    ) -> tuple[list[SearchResult], int, list[str]]:
        collected: list[SearchResult] = []
        errors: list[str] = []
        successes = 0
        for start in range(0, len(queries), self.batch_size):
            batch = queries[start : start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self.search.search(q, self.config.search_options(), cancel_token) for q in batch),
                return_exceptions=True,
            )
            for offset, (query, outcome) in enumerate(zip(batch, outcomes)):
                if isinstance(outcome, ResearchCancelledError):
                    raise outcome
                if isinstance(outcome, SearchError):
                    errors.append(f"{query}: {outcome}")
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                successes += 1
                # Variants beyond the base query drift from the topic.
                factor = 1.0 if start + offset == 0 else 0.9
                collected.extend(self._map_results(outcome.results, query, factor))
        return collected, successes, errors

    async def _run_fallback(
        self,
        topic: str,
        errors: list[str],
        cancel_token: CancellationToken | None,
    ) -> list[SearchResult]:
        if self.fallback is None:
            raise AgentExecutionError(self.name, errors[-1] if errors else "no successful queries")
        last_error = errors[-1] if errors else "no results"
        for query in self.fallback.queries(topic):
            try:
                response = await self.search.search(query, self.fallback.options(self.config), cancel_token)
            except ResearchCancelledError:
                raise
            except SearchError as exc:
                last_error = f"{query}: {exc}"
                errors.append(last_error)
                continue
            mapped = [
                r for r in self._map_results(response.results, query, self.fallback.relevance_penalty)
                if r.title and r.url
            ]
            if not mapped:
                continue
            logger.info(f"Agent {self.name} recovered via '{self.fallback.name}' fallback: '{query}'")
            if self.fallback.max_results is not None:
                mapped = mapped[: self.fallback.max_results]
            return mapped
        raise AgentExecutionError(self.name, f"all fallback queries failed ({last_error})")

    def _map_results(self, raw_results: list[dict[str, Any]], query: str, factor: float) -> list[SearchResult]:
        scores = [r.get("score") for r in raw_results if isinstance(r.get("score"), (int, float))]
        top_score = max(scores) if scores else 0.0
        total = max(len(raw_results), 1)
        mapped: list[SearchResult] = []
        for idx, raw in enumerate(raw_results):
            score = raw.get("score")
            if isinstance(score, (int, float)) and top_score > 0:
                relevance = float(score) / top_score
            else:
                relevance = self.config.default_relevance * (1.0 - idx / (2 * total))
            engines = raw.get("engines") or []
            metadata: dict[str, Any] = {
                "agent": self.name,
                "query": query,
                "category": raw.get("category"),
                "engines": list(engines),
            }
            if raw.get("thumbnail"):
                metadata["thumbnail"] = raw["thumbnail"]
            mapped.append(
                SearchResult(
                    title=clean_content(raw.get("title") or "", max_length=300),
                    url=(raw.get("url") or "").strip(),
                    snippet=clean_content(raw.get("content") or ""),
                    source_engine=raw.get("engine") or (engines[0] if engines else self.name),
                    relevance_score=round(max(0.0, min(1.0, relevance * factor)), 4),
                    published_at=parse_published(raw.get("publishedDate")),
                    metadata=self.enrich(raw, metadata),
                )
            )
        return mapped

    def summarize(self, topic: str, results: list[SearchResult]) -> str | None:
        if not results:
            return None
        key_info = " ".join(r.snippet for r in results[:5] if r.snippet)[:500]
        return f"Found {len(results)} results for {topic}. Key information: {key_info}"

    def propose_subtopics(self, topic: str, results: list[SearchResult], limit: int = 5) -> list[str]:
        """Candidate subtopics from result titles and recurring phrases."""
        topic_tokens = tokenize(topic)
        topic_lower = topic.lower().strip()
        counts: Counter[str] = Counter()
        display: dict[str, str] = {}

        for result in results:
            for segment in re.split(r"\s+[-|:–—]\s+|:\s+", result.title):
                segment = segment.strip(" .,-")
                words = segment.split()
                if not 2 <= len(words) <= 6 or segment.lower() == topic_lower:
                    continue
                if not tokenize(segment) & topic_tokens:
                    continue
                key = segment.lower()
                counts[key] += 2
                display.setdefault(key, segment)

            words = [w for w in re.findall(r"[a-z][a-z0-9+#-]{2,}", f"{result.title} {result.snippet}".lower())]
            for first, second in zip(words, words[1:]):
                if first in STOPWORDS or second in STOPWORDS:
                    continue
                if {first, second} <= topic_tokens:
                    continue
                key = f"{first} {second}"
                counts[key] += 1
                display.setdefault(key, key)

        ranked = [key for key, count in counts.most_common() if count >= 2]
        return [display[key] for key in ranked[:limit]]
