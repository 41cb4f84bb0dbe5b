"""Search configuration for the five research agents."""
from __future__ import annotations

from topicmesh.agents.base import AgentSearchConfig

GENERAL = AgentSearchConfig(
    name="general",
    description="Broad web coverage that anchors a balanced overview",
    categories=("general",),
    safesearch=1,
    prefixes=("what is", "overview of", "introduction to", "guide to"),
    suffixes=("explained", "overview", "basics", "fundamentals", "definition"),
    exclude_terms=("buy", "purchase", "sale", "price", "cost"),
    include_terms=("information", "guide", "tutorial", "explanation"),
    min_content_length=100,
    max_results=20,
    score_threshold=0.3,
    required_fields=("title", "url", "content"),
    default_relevance=0.8,
    queries_per_run=4,
)

ACADEMIC = AgentSearchConfig(
    name="academic",
    description="Scholarly papers and peer-reviewed research",
    engines=("arxiv", "google scholar", "pubmed", "semantic scholar", "crossref"),
    categories=("science", "it"),
    safesearch=0,
    time_range="year",
    prefixes=("research on", "study of", "analysis of", "review of"),
    suffixes=("research", "study", "analysis", "paper", "journal"),
    exclude_terms=("blog", "opinion", "news", "commercial"),
    include_terms=("peer reviewed", "survey"),
    min_content_length=120,
    max_results=15,
    score_threshold=0.4,
    default_relevance=0.75,
)

COMPUTATIONAL = AgentSearchConfig(
    name="computational",
    description="Formulas, algorithms and computational knowledge",
    engines=("wolframalpha", "wikipedia"),
    categories=("science", "it"),
    safesearch=0,
    prefixes=("calculate", "formula for", "equation for", "algorithm for"),
    suffixes=("formula", "equation", "calculation", "algorithm", "computation"),
    exclude_terms=("tutorial", "guide"),
    include_terms=("mathematics", "model"),
    min_content_length=50,
    max_results=10,
    score_threshold=0.5,
    default_relevance=0.7,
)

VIDEO = AgentSearchConfig(
    name="video",
    description="Educational videos, lectures and walkthroughs",
    engines=("youtube", "vimeo", "dailymotion"),
    categories=("videos",),
    safesearch=1,
    time_range="year",
    prefixes=("tutorial", "how to", "learn", "course on"),
    suffixes=("tutorial", "explained", "course", "lesson", "walkthrough"),
    exclude_terms=("music", "funny", "meme", "prank"),
    include_terms=("lecture", "lesson"),
    min_content_length=50,
    max_results=12,
    score_threshold=0.3,
    default_relevance=0.65,
)

COMMUNITY = AgentSearchConfig(
    name="community",
    description="Discussions, Q&A threads and practitioner experience",
    engines=("reddit", "stackoverflow", "stackexchange"),
    categories=("social media",),
    safesearch=1,
    prefixes=("discussion about", "experience with", "questions about", "help with"),
    suffixes=("discussion", "experience", "question", "problem", "community"),
    exclude_terms=("spam", "advertisement", "promotion"),
    include_terms=("forum", "answers"),
    min_content_length=100,
    max_results=15,
    score_threshold=0.2,
    default_relevance=0.6,
)

AGENT_CONFIGS: dict[str, AgentSearchConfig] = {
    config.name: config for config in (GENERAL, ACADEMIC, COMPUTATIONAL, VIDEO, COMMUNITY)
}
