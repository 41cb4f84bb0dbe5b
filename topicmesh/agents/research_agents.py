from __future__ import annotations

import re
from typing import Any

from topicmesh.agents.base import BaseResearchAgent, FallbackStrategy, GeneralizedQueryFallback, SimplifyingFallback
from topicmesh.agents.configs import ACADEMIC, COMMUNITY, COMPUTATIONAL, GENERAL, VIDEO
from topicmesh.models.research import SearchResult
from topicmesh.services.reliability import ResilientSearch
from topicmesh.tools.web_utils import parse_count

SCHOLARLY_ENGINES = {"arxiv", "google scholar", "pubmed", "semantic scholar", "crossref"}
DOI_RE = re.compile(r"\b10\.\d{4,9}/[^\s\"<>]+", re.IGNORECASE)
YEAR_RE = re.compile(r"\b(19[5-9]\d|20\d{2})\b")


def _text(raw: dict[str, Any]) -> str:
    return f"{raw.get('title') or ''} {raw.get('content') or ''}"


class GeneralAgent(BaseResearchAgent):
    name = "general"
    critical = True

    def enrich(self, raw: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        text = _text(raw).lower()
        metadata["has_definition"] = bool(re.search(r"\b(is a|refers to|defined as|definition)\b", text))
        metadata["content_type"] = "article"
        return metadata


class AcademicAgent(BaseResearchAgent):
    name = "academic"

    def enrich(self, raw: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        text = _text(raw)
        citations = parse_count(raw.get("citations"))
        if citations is None:
            match = re.search(r"cited by\s+([\d,]+)", text, re.IGNORECASE)
            citations = parse_count(match.group(1)) if match else None
        published = raw.get("publishedDate")
        year_match = YEAR_RE.search(published) if isinstance(published, str) else None
        year_match = year_match or YEAR_RE.search(text)
        year = int(year_match.group(1)) if year_match else None
        doi = raw.get("doi")
        if not doi and (doi_match := DOI_RE.search(f"{text} {raw.get('url') or ''}")):
            doi = doi_match.group(0)
        engine = (raw.get("engine") or "").lower()
        metadata.update(
            {
                "content_type": "academic",
                "citation_count": citations or 0,
                "publication_year": year,
                "venue": raw.get("journal") or raw.get("publisher"),
                "doi": doi,
                "peer_reviewed": bool(doi) or engine in SCHOLARLY_ENGINES,
            }
        )
        return metadata

    def sort_key(self, result: SearchResult) -> float:
        citations = result.metadata.get("citation_count") or 0
        return result.relevance_score + min(citations, 1000) / 10000


class ComputationalAgent(BaseResearchAgent):
    name = "computational"

    def enrich(self, raw: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        text = _text(raw)
        lowered = text.lower()
        complexity = re.findall(r"O\([^)]{1,20}\)", text)
        metadata.update(
            {
                "content_type": "interactive",
                "has_formula": bool(re.search(r"[=∑∫√±≤≥]|\^\d|\bformula\b|\bequation\b", text, re.IGNORECASE)),
                "has_algorithm": bool(re.search(r"\b(algorithm|pseudocode|step \d|procedure)\b", lowered)),
                "complexity": complexity[:3],
            }
        )
        return metadata


class VideoAgent(BaseResearchAgent):
    name = "video"
    educational_markers = ("tutorial", "lecture", "course", "lesson", "explained", "learn", "introduction")

    def enrich(self, raw: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        text = _text(raw)
        lowered = text.lower()
        views = parse_count(raw.get("views"))
        if views is None:
            match = re.search(r"([\d.,]+\s*[kmb]?)\s+views", lowered)
            views = parse_count(match.group(1)) if match else None
        if re.search(r"\b(advanced|deep dive|expert)\b", lowered):
            difficulty = "advanced"
        elif re.search(r"\b(beginner|introduction|basics|for dummies)\b", lowered):
            difficulty = "beginner"
        else:
            difficulty = "intermediate"
        metadata.update(
            {
                "content_type": "video",
                "duration": raw.get("length") or raw.get("duration"),
                "view_count": views,
                "educational": any(m in lowered for m in self.educational_markers),
                "difficulty": difficulty,
                "author": raw.get("author"),
            }
        )
        return metadata


class CommunityAgent(BaseResearchAgent):
    name = "community"
    positive = ("great", "helpful", "works", "solved", "recommend", "love", "thanks")
    negative = ("broken", "issue", "problem", "hate", "doesn't work", "bug", "fail")

    def enrich(self, raw: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        text = _text(raw)
        lowered = text.lower()
        url = raw.get("url") or ""
        community = None
        if match := re.search(r"reddit\.com/r/([^/]+)", url):
            community = f"r/{match.group(1)}"
        elif match := re.search(r"//([a-z0-9.-]*(?:stackoverflow|stackexchange)\.com)", url):
            community = match.group(1)

        upvotes = re.search(r"([\d.,]+\s*[kmb]?)\s+(?:upvotes|points|votes|score)", lowered)
        comments = re.search(r"([\d.,]+\s*[kmb]?)\s+(?:comments|answers|replies)", lowered)
        pos = sum(lowered.count(w) for w in self.positive)
        neg = sum(lowered.count(w) for w in self.negative)
        sentiment = "positive" if pos > neg else "negative" if neg > pos else "neutral"
        title = (raw.get("title") or "").strip().lower()
        is_question = title.endswith("?") or title.startswith(("how ", "why ", "what ", "is ", "can "))
        practical = sum(1 for w in ("solution", "example", "step", "fixed", "works", "code") if w in lowered)
        metadata.update(
            {
                "content_type": "discussion",
                "community": community,
                "upvotes": parse_count(upvotes.group(1)) if upvotes else None,
                "comment_count": parse_count(comments.group(1)) if comments else None,
                "discussion_type": "question" if is_question else "discussion",
                "sentiment": sentiment,
                "practical_value": round(min(practical / 3, 1.0), 2),
            }
        )
        return metadata

    def sort_key(self, result: SearchResult) -> float:
        return result.relevance_score + 0.1 * result.metadata.get("practical_value", 0.0)


def build_default_agents(
    search: ResilientSearch,
    *,
    batch_size: int = 3,
    general_fallback: FallbackStrategy | None = None,
    specialized_fallback: FallbackStrategy | None = None,
) -> list[BaseResearchAgent]:
    """The standard five-agent roster sharing one guarded search client."""
    specialized_fallback = specialized_fallback or GeneralizedQueryFallback(GENERAL)
    return [
        GeneralAgent(GENERAL, search, fallback=general_fallback or SimplifyingFallback(), batch_size=batch_size),
        AcademicAgent(ACADEMIC, search, fallback=specialized_fallback, batch_size=batch_size),
        ComputationalAgent(COMPUTATIONAL, search, fallback=specialized_fallback, batch_size=batch_size),
        VideoAgent(VIDEO, search, fallback=specialized_fallback, batch_size=batch_size),
        CommunityAgent(COMMUNITY, search, fallback=specialized_fallback, batch_size=batch_size),
    ]
