"""TopicMesh - Recursive Topic Research

Simple CLI for running a research tree against a SearXNG instance.
"""

import argparse
import asyncio
import uuid

from topicmesh.config import settings
from topicmesh.models.research import ResearchContext, ResearchNode, ResearchStatus, UserLevel
from topicmesh.services.runtime import build_runtime
from topicmesh.tools.web_utils import slugify


def print_tree(node: ResearchNode, indent: int = 0) -> None:
    pad = "  " * indent
    sources = len(node.result.aggregated.sources) if node.result else 0
    print(f"{pad}- {node.topic} [{node.status.value}] ({sources} sources)")
    if node.error:
        print(f"{pad}  ! {node.error}")
    for child in node.children:
        print_tree(child, indent + 1)


async def run_research(topic: str, depth: int, subtopics: int, level: str):
    """Run recursive research on the given topic."""
    print(f"Research topic: {topic}")
    print("-" * 50)

    config = settings.model_copy(update={"max_depth": depth, "max_subtopics_per_level": subtopics})
    runtime = build_runtime(config)
    topic_id = f"{slugify(topic)}-{uuid.uuid4().hex[:8]}"

    def on_status(status: ResearchStatus):
        active = ", ".join(status.active_agents) or "-"
        print(f"  [{status.topic_id}] {status.status.value:<12} {status.progress:>3}%  active: {active}")

    def on_node(node: ResearchNode):
        print(f"[+] {node.topic} (depth {node.depth}) -> {node.status.value}")

    try:
        result = await runtime.research.start_recursive_research(
            topic,
            topic_id,
            ResearchContext(user_level=UserLevel(level)),
            on_status_update=on_status,
            on_depth_complete=on_node,
        )
    finally:
        await runtime.aclose()

    print(f"\n[*] Research {result.status}: {result.completed_nodes}/{result.total_nodes} nodes completed")
    if result.error:
        print(f"[!] Error: {result.error}")
    print(f"\n{'=' * 50}")
    print_tree(result.research_tree)

    root = result.research_tree.result
    if root is not None:
        print(f"\n{'=' * 50}")
        print(root.aggregated.summary)
        print("\nTop sources:")
        for scored in root.scored_results[:10]:
            print(f"  {scored.rank:>2}. [{scored.tier.value}] {scored.result.title} - {scored.result.url}")


def main():
    parser = argparse.ArgumentParser(description="TopicMesh recursive topic research")
    parser.add_argument("--topic", "-t", required=True, help="Topic to research")
    parser.add_argument("--depth", "-d", type=int, default=settings.max_depth, help="Maximum tree depth")
    parser.add_argument("--subtopics", "-s", type=int, default=settings.max_subtopics_per_level, help="Subtopics per level")
    parser.add_argument("--level", "-l", choices=[lvl.value for lvl in UserLevel], default="intermediate")

    args = parser.parse_args()

    asyncio.run(run_research(args.topic, args.depth, args.subtopics, args.level))


if __name__ == "__main__":
    main()
