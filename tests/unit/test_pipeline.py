"""Unit tests for the request pipeline's stage ordering and error policy."""

from io import BytesIO

import pytest
from PIL import Image

from app.api.v1.schemas import AspectRatio, Style
from app.models.generation import GenerationRequest
from app.services.errors import (
    AIGenerationFailed,
    ImageTooSmall,
    InvalidImageFormat,
    QuotaExceeded,
    ServiceUnavailable,
)


def request_for(image: bytes, aspect=AspectRatio.SQUARE, mime="image/jpeg") -> GenerationRequest:
    return GenerationRequest(image=image, mime_type=mime, aspect=aspect, style=Style.NATURAL)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_returns_four_formatted_images(self, services, source_jpeg):
        result = await services.pipeline.run("alice", request_for(source_jpeg))

        assert result.count == 4
        assert result.aspect == AspectRatio.SQUARE
        for data in result.images:
            assert Image.open(BytesIO(data)).size == (1080, 1080)
        assert (result.usage.used, result.usage.limit, result.usage.remaining) == (1, 5, 4)

    @pytest.mark.asyncio
    async def test_records_usage(self, services, source_jpeg):
        await services.pipeline.run("alice", request_for(source_jpeg))
        assert services.usage_logger.entries == [("alice", "1:1", 4, 4)]

    @pytest.mark.asyncio
    async def test_usage_logger_failure_is_swallowed(self, make_services, usage_logger_factory, source_jpeg):
        services = make_services(usage_logger=usage_logger_factory(fail=True))

        result = await services.pipeline.run("alice", request_for(source_jpeg))

        assert result.count == 4
        assert services.quota_gate.get_status("alice").used == 1


class TestShortCircuits:
    @pytest.mark.asyncio
    async def test_validation_happens_before_quota_and_generation(self, services, image_factory):
        with pytest.raises(ImageTooSmall):
            await services.pipeline.run("alice", request_for(image_factory(320, 240)))

        assert services.orchestrator._backend.calls == []
        assert services.quota_gate.get_status("alice").used == 0

    @pytest.mark.asyncio
    async def test_rejects_unsupported_mime_type(self, services, source_jpeg):
        with pytest.raises(InvalidImageFormat):
            await services.pipeline.run("alice", request_for(source_jpeg, mime="image/webp"))

    @pytest.mark.asyncio
    async def test_quota_exhausted_skips_generation(self, services, seed_quota, source_jpeg):
        seed_quota("alice", limit=0)

        with pytest.raises(QuotaExceeded) as exc_info:
            await services.pipeline.run("alice", request_for(source_jpeg))

        assert services.orchestrator._backend.calls == []
        assert exc_info.value.to_envelope()["quota"] == {"used": 0, "limit": 0, "remaining": 0}

    @pytest.mark.asyncio
    async def test_failed_generation_consumes_no_quota(self, make_services, source_jpeg):
        services = make_services(script=(1,))

        with pytest.raises(AIGenerationFailed):
            await services.pipeline.run("alice", request_for(source_jpeg))

        assert services.quota_gate.get_status("alice").used == 0
        assert services.usage_logger.entries == []

    @pytest.mark.asyncio
    async def test_open_circuit_surfaces_service_unavailable(self, make_services, breaker_factory, source_jpeg):
        breaker = breaker_factory(threshold=1)
        services = make_services(script=(0,), circuit_breaker=breaker)

        with pytest.raises(AIGenerationFailed):
            await services.pipeline.run("alice", request_for(source_jpeg))
        with pytest.raises(ServiceUnavailable):
            await services.pipeline.run("alice", request_for(source_jpeg))

    @pytest.mark.asyncio
    async def test_last_slot_taken_concurrently(self, services, seed_quota, source_jpeg, monkeypatch):
        """If another request used the last slot mid-flight, this one is refused."""
        gate = services.quota_gate
        seed_quota("alice", limit=1)
        original_generate = services.orchestrator.generate_set

        async def generate_and_race(*args, **kwargs):
            images = await original_generate(*args, **kwargs)
            gate.increment("alice")
            return images

        monkeypatch.setattr(services.orchestrator, "generate_set", generate_and_race)

        with pytest.raises(QuotaExceeded):
            await services.pipeline.run("alice", request_for(source_jpeg))
        assert gate.get_status("alice").used == 1
