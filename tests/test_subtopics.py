from __future__ import annotations

from topicmesh.models.research import AgentResult, AgentStatus
from topicmesh.services.subtopics import SubtopicIdentifier


def proposal(name: str, subtopics: list[str], status: AgentStatus = AgentStatus.SUCCESS) -> AgentResult:
    return AgentResult(agent_name=name, topic="machine learning", subtopics=subtopics, status=status)


def test_unions_and_dedupes_case_insensitively():
    results = {
        "general": proposal("general", ["Neural Networks", "Decision  Trees"]),
        "academic": proposal("academic", ["neural networks", "Reinforcement Learning"]),
    }

    subtopics = SubtopicIdentifier(max_depth=3).identify(results, "machine learning", 0)

    assert subtopics == ["Neural Networks", "Decision Trees", "Reinforcement Learning"]


def test_drops_topic_echoes_and_short_candidates():
    results = [proposal("general", ["Machine Learning", "learning", "ML", "Feature Engineering"])]

    subtopics = SubtopicIdentifier().identify(results, "machine learning", 0)

    assert subtopics == ["Feature Engineering"]


def test_skips_failed_agents():
    results = [
        proposal("general", ["Gradient Descent"]),
        proposal("video", ["Backpropagation"], status=AgentStatus.ERROR),
    ]
    assert SubtopicIdentifier().identify(results, "machine learning", 1) == ["Gradient Descent"]


def test_caps_per_level():
    results = [proposal("general", [f"Subtopic {i}" for i in range(10)])]
    assert len(SubtopicIdentifier(max_subtopics_per_level=4).identify(results, "machine learning", 0)) == 4


def test_nothing_at_max_depth():
    results = [proposal("general", ["Gradient Descent"])]
    identifier = SubtopicIdentifier(max_depth=2)
    assert identifier.identify(results, "machine learning", 2) == []
    assert identifier.identify(results, "machine learning", 1) == ["Gradient Descent"]
