from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from topicmesh.models.documents import DocumentHit, ResearchDocument, StoreResult
from topicmesh.models.research import AgentCoordinationResult

SEARCH_DOCS_PER_AGENT = 3
MIN_SNIPPET_LENGTH = 50


class DocumentIndex(Protocol):
    async def store(self, docs: list[ResearchDocument]) -> StoreResult: ...

    async def search(
        self,
        query: str,
        topic_filter: str | None = None,
        score_threshold: float = 0.0,
        limit: int = 10,
    ) -> list[DocumentHit]: ...


class ChromaDocumentIndex:
    """Research documents in a single Chroma collection, filtered by topic metadata.

    Chroma's client is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, persist_dir: str, collection_name: str = "topicmesh_research", *, client: Any | None = None):
        self.persist_dir = Path(persist_dir)
        self.collection_name = collection_name
        self._client = client
        self._client_lock = asyncio.Lock()

    async def store(self, docs: list[ResearchDocument]) -> StoreResult:
        usable = [doc for doc in docs if doc.content.strip()]
        if not usable:
            return StoreResult(skipped=len(docs))
        collection = await self._collection()

        def _sync_upsert() -> None:
            collection.upsert(
                ids=[doc.id for doc in usable],
                documents=[doc.content for doc in usable],
                metadatas=[_flatten_metadata(doc.metadata) for doc in usable],
            )

        await asyncio.to_thread(_sync_upsert)
        return StoreResult(stored=len(usable), skipped=len(docs) - len(usable))

    async def search(
        self,
        query: str,
        topic_filter: str | None = None,
        score_threshold: float = 0.0,
        limit: int = 10,
    ) -> list[DocumentHit]:
        collection = await self._collection()

        def _sync_query() -> dict[str, Any]:
            kwargs: dict[str, Any] = {
                "query_texts": [query],
                "n_results": max(int(limit), 1),
                "include": ["documents", "metadatas", "distances"],
            }
            if topic_filter:
                kwargs["where"] = {"root_topic_id": topic_filter}
            return collection.query(**kwargs)

        result = await asyncio.to_thread(_sync_query)
        ids = (result.get("ids") or [[]])[0]
        docs = (result.get("documents") or [[]])[0]
        metas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]

        hits: list[DocumentHit] = []
        for idx, doc in enumerate(docs):
            if not isinstance(doc, str):
                continue
            distance = float(distances[idx]) if idx < len(distances) else 1.0
            score = 1.0 / (1.0 + max(distance, 0.0))
            if score < score_threshold:
                continue
            metadata = metas[idx] if idx < len(metas) and isinstance(metas[idx], dict) else {}
            hit_id = ids[idx] if idx < len(ids) else f"hit_{idx}"
            hits.append(DocumentHit(id=hit_id, content=doc, score=round(score, 4), metadata=metadata))
        hits.sort(key=lambda hit: (-hit.score, hit.id))
        return hits

    async def _collection(self) -> Any:
        async with self._client_lock:
            if self._client is None:
                import chromadb

                self.persist_dir.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.persist_dir))
            client = self._client
        return await asyncio.to_thread(
            client.get_or_create_collection,
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )


def build_round_documents(result: AgentCoordinationResult, root_topic_id: str) -> list[ResearchDocument]:
    """Documents persisted after one coordination round.

    Summary, key points, per-agent summaries and each agent's top search
    hits with a usable snippet, all tagged with topic and depth.
    """
    topic_id, depth = result.topic_id, result.depth
    base = {
        "topic": result.topic,
        "topic_id": topic_id,
        "root_topic_id": root_topic_id,
        "depth": depth,
        "created_at": datetime.now(UTC).isoformat(),
    }
    aggregated = result.aggregated
    docs = [
        ResearchDocument(
            id=f"{topic_id}-summary-{depth}",
            content=aggregated.summary,
            metadata={**base, "kind": "summary", "confidence": aggregated.confidence},
        )
    ]
    docs.extend(
        ResearchDocument(
            id=f"{topic_id}-keypoint-{depth}-{idx}",
            content=point,
            metadata={**base, "kind": "key_point"},
        )
        for idx, point in enumerate(aggregated.key_points)
    )
    for agent_name, agent_result in result.agent_results.items():
        if not agent_result.succeeded:
            continue
        if agent_result.summary:
            docs.append(
                ResearchDocument(
                    id=f"{topic_id}-agent-{agent_name}-{depth}",
                    content=agent_result.summary,
                    metadata={**base, "kind": "agent_summary", "agent": agent_name},
                )
            )
        usable = [r for r in agent_result.results if len(r.snippet) > MIN_SNIPPET_LENGTH]
        for idx, search_result in enumerate(usable[:SEARCH_DOCS_PER_AGENT]):
            docs.append(
                ResearchDocument(
                    id=f"{topic_id}-search-{agent_name}-{depth}-{idx}",
                    content=f"{search_result.title}\n\n{search_result.snippet}",
                    metadata={
                        **base,
                        "kind": "search_result",
                        "agent": agent_name,
                        "url": search_result.url,
                        "engine": search_result.source_engine,
                        "relevance": search_result.relevance_score,
                    },
                )
            )
    return docs


def _flatten_metadata(metadata: dict[str, Any]) -> dict[str, str | int | float | bool]:
    flat: dict[str, str | int | float | bool] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        elif isinstance(value, (list, tuple, set)):
            flat[key] = ", ".join(str(v) for v in value)
        else:
            flat[key] = str(value)
    return flat
