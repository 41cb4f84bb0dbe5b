from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from topicmesh.models.research import ResearchContext, UserLevel


# --- Requests ---


class ResearchContextModel(BaseModel):
    user_level: UserLevel = UserLevel.INTERMEDIATE
    learning_style: str | None = None
    content_types: list[str] = []
    prefer_recent: bool = False
    domain: str | None = None

    def to_context(self) -> ResearchContext:
        return ResearchContext(
            user_level=self.user_level,
            learning_style=self.learning_style,
            content_types=list(self.content_types),
            prefer_recent=self.prefer_recent,
            domain=self.domain,
        )


class ResearchRequest(BaseModel):
    topic: str = Field(min_length=1, max_length=300)
    topic_id: str | None = Field(default=None, max_length=200, pattern=r"^[A-Za-z0-9_-]+$")
    context: ResearchContextModel = ResearchContextModel()


# --- Responses ---


class ResearchStartResponse(BaseModel):
    topic_id: str
    status: str = "started"


class ResearchResultResponse(BaseModel):
    topic_id: str
    status: str
    result: dict[str, Any] | None = None
