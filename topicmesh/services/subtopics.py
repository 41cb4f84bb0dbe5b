from __future__ import annotations

from collections.abc import Iterable, Mapping

from topicmesh.models.research import AgentResult


class SubtopicIdentifier:
    """Unions agent-proposed subtopics into the next tree level."""

    def __init__(self, max_depth: int = 3, max_subtopics_per_level: int = 5):
        self.max_depth = max_depth
        self.max_subtopics_per_level = max_subtopics_per_level

    def identify(
        self,
        agent_results: Mapping[str, AgentResult] | Iterable[AgentResult],
        topic: str,
        current_depth: int,
    ) -> list[str]:
        if current_depth >= self.max_depth:
            return []
        results = agent_results.values() if isinstance(agent_results, Mapping) else agent_results

        topic_lower = " ".join(topic.split()).lower()
        seen: set[str] = set()
        subtopics: list[str] = []
        for agent in results:
            if not agent.succeeded:
                continue
            for candidate in agent.subtopics:
                cleaned = " ".join(candidate.split())
                key = cleaned.lower()
                if len(key) <= 2 or key == topic_lower or key in topic_lower:
                    continue
                if key in seen:
                    continue
                seen.add(key)
                subtopics.append(cleaned)
                if len(subtopics) >= self.max_subtopics_per_level:
                    return subtopics
        return subtopics
