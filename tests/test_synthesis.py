"""Tests for summary synthesis and the OpenRouter client."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from topicmesh import llm_client
from topicmesh.models.research import AgentResult, AggregatedContent, SearchResult
from topicmesh.services.synthesis import SYSTEM_PROMPT, SummarySynthesizer, build_prompt


def aggregated(with_sources: bool = True) -> AggregatedContent:
    source = SearchResult(
        title="Qubit",
        url="https://en.wikipedia.org/wiki/Qubit",
        snippet="A qubit is a two-state quantum-mechanical system.",
        source_engine="wikipedia",
        relevance_score=0.9,
    )
    general = AgentResult(agent_name="general", topic="qubits", results=[source], summary="Found 1 results for qubits.")
    return AggregatedContent(
        summary="Comprehensive research summary for qubits",
        key_points=["A qubit is a two-state quantum-mechanical system"],
        sources=[source] if with_sources else [],
        content_by_agent={"general": general},
        confidence=0.8,
        completeness=1.0,
    )


class TestSummarySynthesizer:
    def test_prompt_includes_findings_and_sources(self):
        prompt = build_prompt("qubits", aggregated())

        assert prompt.startswith("Topic: qubits")
        assert "- general: Found 1 results for qubits." in prompt
        assert "- Qubit (https://en.wikipedia.org/wiki/Qubit):" in prompt
        assert "- A qubit is a two-state quantum-mechanical system" in prompt

    @pytest.mark.asyncio
    async def test_returns_generated_text(self):
        generate = AsyncMock(return_value="Qubits are the unit of quantum information.")
        synthesizer = SummarySynthesizer(generate, temperature=0.2, max_tokens=300)

        text = await synthesizer.synthesize("qubits", aggregated())

        assert text == "Qubits are the unit of quantum information."
        args, kwargs = generate.call_args
        assert args[1:] == (0.2, 300)
        assert kwargs == {"system": SYSTEM_PROMPT}

    @pytest.mark.asyncio
    async def test_generation_failure_keeps_aggregated_summary(self):
        generate = AsyncMock(side_effect=RuntimeError("rate limited"))
        assert await SummarySynthesizer(generate).synthesize("qubits", aggregated()) is None

    @pytest.mark.asyncio
    async def test_no_sources_skips_generation(self):
        generate = AsyncMock()
        assert await SummarySynthesizer(generate).synthesize("qubits", aggregated(with_sources=False)) is None
        generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_generation_is_ignored(self):
        assert await SummarySynthesizer(AsyncMock(return_value="")).synthesize("qubits", aggregated()) is None


class FakeCompletions:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def fake_client(completions: FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


class TestLLMClient:
    def test_get_model_prefers_explicit_model(self):
        with patch("topicmesh.llm_client.settings") as mock_settings:
            mock_settings.openrouter_model = "anthropic/claude-3.5-haiku"
            mock_settings.default_model = "openai/gpt-4o-mini"
            assert llm_client.get_model() == "anthropic/claude-3.5-haiku"

    def test_get_model_falls_back_to_default(self):
        with patch("topicmesh.llm_client.settings") as mock_settings:
            mock_settings.openrouter_model = ""
            mock_settings.default_model = "openai/gpt-4o-mini"
            assert llm_client.get_model() == "openai/gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_generate_returns_stripped_text(self):
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="  A short summary.  "))],
            usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30),
        )
        completions = FakeCompletions(response=response)

        with patch("topicmesh.llm_client.client", return_value=fake_client(completions)):
            text = await llm_client.generate("Summarize qubits", 0.1, 200, system="Be brief", model="test/model")

        assert text == "A short summary."
        call = completions.calls[0]
        assert call["model"] == "test/model"
        assert call["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Summarize qubits"},
        ]
        assert call["temperature"] == 0.1
        assert call["max_tokens"] == 200

    @pytest.mark.asyncio
    async def test_generate_without_choices_returns_empty(self):
        completions = FakeCompletions(response=SimpleNamespace(choices=[], usage=None))
        with patch("topicmesh.llm_client.client", return_value=fake_client(completions)):
            assert await llm_client.generate("prompt", model="test/model") == ""

    @pytest.mark.asyncio
    async def test_generate_propagates_errors(self):
        completions = FakeCompletions(error=RuntimeError("upstream 502"))
        with patch("topicmesh.llm_client.client", return_value=fake_client(completions)):
            with pytest.raises(RuntimeError, match="upstream 502"):
                await llm_client.generate("prompt", model="test/model")
