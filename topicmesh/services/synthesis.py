from __future__ import annotations

from typing import Awaitable, Callable

from loguru import logger

from topicmesh.models.research import AggregatedContent

GenerateFn = Callable[..., Awaitable[str]]

SYSTEM_PROMPT = (
    "You write concise, neutral research summaries for learners. "
    "Use only the material provided. Do not invent sources or facts."
)

MAX_SOURCE_LINES = 8


def build_prompt(topic: str, aggregated: AggregatedContent) -> str:
    agent_lines = [
        f"- {name}: {result.summary}"
        for name, result in aggregated.content_by_agent.items()
        if result.summary
    ]
    source_lines = [f"- {s.title} ({s.url}): {s.snippet[:240]}" for s in aggregated.sources[:MAX_SOURCE_LINES]]
    key_points = [f"- {p}" for p in aggregated.key_points]
    return "\n".join(
        [
            f"Topic: {topic}",
            "",
            "Findings by search strategy:",
            *agent_lines,
            "",
            "Key points:",
            *key_points,
            "",
            "Top sources:",
            *source_lines,
            "",
            "Write a 2-3 paragraph summary of the topic, then a short list of what to study next.",
        ]
    )


class SummarySynthesizer:
    """Replaces the concatenated agent summaries with a generated one."""

    def __init__(self, generate: GenerateFn, *, temperature: float = 0.3, max_tokens: int = 800):
        self._generate = generate
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def synthesize(self, topic: str, aggregated: AggregatedContent) -> str | None:
        if not aggregated.sources:
            return None
        try:
            text = await self._generate(
                build_prompt(topic, aggregated),
                self.temperature,
                self.max_tokens,
                system=SYSTEM_PROMPT,
            )
        except Exception as exc:
            logger.warning(f"Summary synthesis failed for '{topic}', keeping aggregated summary: {exc}")
            return None
        return text or None
