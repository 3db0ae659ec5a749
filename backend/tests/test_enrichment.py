"""
Tests for the AI enricher, provider response parsing and provider selection.
"""
import asyncio

import pytest

from devfeed.errors import EnrichErrorKind, NoProviderAvailable
from devfeed.models.domain import EnrichedFields, ProcessingStatus
from devfeed.providers import AnthropicProvider, ExtractiveProvider, OpenAIProvider, ProviderRegistry
from devfeed.providers.base import FALLBACK_CONFIDENCE, MAX_TAGS, parse_summary_response, parse_tags
from devfeed.providers.registry import build_default_registry
from devfeed.services.enrichment import AIEnricher

from conftest import FakeProvider, make_item, make_profile, make_settings


class TestAIEnricher:

    @pytest.mark.asyncio
    async def test_batch_enriches_items(self, enricher):
        items = [make_item(url=f"https://e.com/{n}", tags=["existing"]) for n in range(3)]

        result = await enricher.process_batch(items)

        assert len(result.processed) == 3
        assert result.failed == []
        for item in items:
            assert item.ai_processed is True
            assert item.processing_status == ProcessingStatus.PROCESSED
            assert item.ai_summary.startswith("Summary of")
            assert item.tags == ["existing", "python"]
            assert item.ai_model == "fake-model"

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        enricher = AIEnricher(FakeProvider(fail_urls=("https://e.com/1",)), concurrency=2)
        items = [make_item(url=f"https://e.com/{n}") for n in range(3)]

        result = await enricher.process_batch(items)

        assert len(result.processed) == 2
        assert len(result.failed) == 1
        failure = result.failed[0]
        assert failure.item.url == "https://e.com/1"
        assert failure.reason == EnrichErrorKind.PROVIDER_ERROR
        assert failure.item.processing_status == ProcessingStatus.FAILED
        assert failure.item.ai_processed is False

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self):
        enricher = AIEnricher(FakeProvider(delay=1.0), item_timeout=0.05)
        item = make_item()

        result = await enricher.process_batch([item])

        assert result.failed[0].reason == EnrichErrorKind.TIMEOUT
        assert item.processing_status == ProcessingStatus.FAILED

    @pytest.mark.asyncio
    async def test_expired_deadline_fails_without_calling_provider(self):
        provider = FakeProvider()
        enricher = AIEnricher(provider)
        deadline = asyncio.get_running_loop().time() - 1

        result = await enricher.process_batch([make_item()], deadline=deadline)

        assert result.failed[0].reason == EnrichErrorKind.TIMEOUT
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        class CountingProvider(FakeProvider):
            async def summarize(self, item, focus=None):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return await super().summarize(item, focus)

        enricher = AIEnricher(CountingProvider(), concurrency=2)
        await enricher.process_batch([make_item(url=f"https://e.com/{n}") for n in range(6)])

        assert peak == 2

    @pytest.mark.asyncio
    async def test_processed_and_failed_items_are_not_resent(self, enricher, provider):
        done = make_item(url="https://e.com/done", processing_status=ProcessingStatus.PROCESSED)
        failed = make_item(url="https://e.com/failed", processing_status=ProcessingStatus.FAILED)

        result = await enricher.process_batch([done, failed])

        assert provider.calls == []
        assert result.processed == [done]
        assert result.failed[0].detail == "previously failed"

    @pytest.mark.asyncio
    async def test_profile_policy_controls_fields(self, enricher):
        profile = make_profile(generate_summary=False, enhance_tags=True)
        item = make_item()

        await enricher.process_batch([item], profile)

        assert item.ai_summary is None
        assert item.ai_tags == ["python"]
        assert item.ai_processed is True


class TestRefineScore:

    def test_matching_tags_raise_score(self):
        profile = make_profile(keywords=("machine learning", "python"))
        refined = AIEnricher.refine_score(0.5, ["python", "learning", "cooking"], profile)
        assert refined == 0.6

    def test_never_lowers_and_caps_at_one(self):
        profile = make_profile(keywords=("python",))
        assert AIEnricher.refine_score(0.4, ["gardening"], profile) == 0.4
        assert AIEnricher.refine_score(0.98, ["python"], profile) == 1.0

    def test_no_keywords_leaves_score(self):
        assert AIEnricher.refine_score(0.3, ["python"], make_profile()) == 0.3


class TestResponseParsing:

    def test_json_in_prose(self):
        text = 'Here you go:\n{"summary": "Short.", "keyPoints": ["a", "b"], "tags": ["Python", "python", "AI"], "confidence": 1.7}'
        fields = parse_summary_response(text, model="m")

        assert fields.summary == "Short."
        assert fields.key_points == ["a", "b"]
        assert fields.tags == ["python", "ai"]
        assert fields.confidence == 1.0

    def test_unparsable_response_falls_back(self):
        fields = parse_summary_response("Just a plain summary.", model="m")
        assert fields.summary == "Just a plain summary."
        assert fields.confidence == FALLBACK_CONFIDENCE
        assert fields.tags == []

    def test_tags_from_string_are_capped(self):
        tags = parse_tags(", ".join(f"tag{n}" for n in range(20)))
        assert len(tags) == MAX_TAGS
        assert tags[0] == "tag0"


class TestProviderSelection:

    def test_unconfigured_providers_are_not_ready(self):
        assert not AnthropicProvider(api_key=None).is_ready()
        assert not OpenAIProvider(api_key=None).is_ready()
        assert not ExtractiveProvider(enabled=False).is_ready()

    def test_no_ready_provider_raises(self):
        with pytest.raises(NoProviderAvailable):
            build_default_registry().create_default(make_settings())

    def test_preferred_ready_provider_wins(self):
        settings = make_settings(extractive_provider_enabled=True, ai_provider="extractive")
        provider = build_default_registry().create_default(settings)
        assert provider.name == "extractive"

    def test_falls_through_to_first_ready(self):
        registry = ProviderRegistry()
        registry.register("down", lambda s: FakeProvider(ready=False))
        registry.register("up", lambda s: FakeProvider(tags=("up",)))

        provider = registry.create_default(make_settings())

        assert provider.is_ready()
        assert provider.tags == ["up"]

    @pytest.mark.asyncio
    async def test_extractive_summary(self):
        item = make_item(
            title="Release notes",
            content="Python 3.13 ships a JIT. It also adds a free-threaded build. Docker images follow.",
        )
        fields = await ExtractiveProvider().summarize(item)

        assert isinstance(fields, EnrichedFields)
        assert fields.summary.startswith("Python 3.13 ships a JIT.")
        assert "python" in fields.tags
        assert fields.model == "extractive-v1"
