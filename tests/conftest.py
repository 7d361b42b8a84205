"""Shared pytest fixtures for the dish restyle API tests."""

from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Callable, List, Sequence

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.config import Settings
from app.main import create_app
from app.services.circuit_breaker import CircuitBreaker
from app.services.container import Services, build_services
from app.models.generation import QuotaRecord, utcnow
from app.services.quota import InMemoryQuotaStore

TEST_TOKEN = "test-token"
TEST_USER = "user-1"


def make_image_bytes(
    width: int,
    height: int,
    fmt: str = "JPEG",
    color: tuple = (200, 120, 40),
) -> bytes:
    """Encode a solid-color image with a darker center block (the "dish")."""
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    image = Image.new(mode, (width, height), fill)
    center = tuple(max(0, c - 100) for c in color)
    if mode == "RGBA":
        center = center + (255,)
    box = (width // 4, height // 4, 3 * width // 4, 3 * height // 4)
    image.paste(Image.new(mode, (box[2] - box[0], box[3] - box[1]), center), box[:2])
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


class FakeBackend:
    """
    Scripted AIBackend.

    Each call consumes the next entry of `script`: an int means "return that
    many images", an exception instance is raised. The last entry repeats.
    """

    def __init__(self, script: Sequence, image: bytes | None = None) -> None:
        self.script = list(script)
        self.image = image or make_image_bytes(96, 72)
        self.calls: List[dict] = []

    def generate(self, image: bytes, mime_type: str, prompt: str) -> List[bytes]:
        index = min(len(self.calls), len(self.script) - 1)
        self.calls.append({"image": image, "mime_type": mime_type, "prompt": prompt})
        step = self.script[index]
        if isinstance(step, BaseException):
            raise step
        return [self.image] * step


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class MemoryUsageLogger:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.entries: List[tuple] = []

    def record(self, user_id, aspect, count, images) -> None:
        if self.fail:
            raise OSError("disk full")
        self.entries.append((user_id, aspect, count, len(images)))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def source_jpeg() -> bytes:
    """A valid 1000x1000 JPEG upload."""
    return make_image_bytes(1000, 1000)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        gemini_api_key="test-key",
        generation_base_delay_seconds=0.0,
        api_tokens={TEST_TOKEN: TEST_USER},
        usage_log_path=tmp_path / "generations.jsonl",
    )


@pytest.fixture
def quota_store() -> InMemoryQuotaStore:
    return InMemoryQuotaStore()


@pytest.fixture
def seed_quota(quota_store: InMemoryQuotaStore) -> Callable[..., None]:
    """Write a current-period quota record straight into the store."""

    def seed(user_id: str, limit: int, used: int = 0) -> None:
        quota_store.write(
            user_id,
            QuotaRecord(monthly_limit=limit, current_period_used=used, period_start=utcnow()),
        )

    return seed


@pytest.fixture
def make_services(test_settings: Settings, quota_store: InMemoryQuotaStore) -> Callable[..., Services]:
    """Build a Services graph around a FakeBackend; keyword overrides pass through."""

    def factory(script: Sequence = (4,), **overrides) -> Services:
        overrides.setdefault("quota_store", quota_store)
        overrides.setdefault("usage_logger", MemoryUsageLogger())
        return build_services(test_settings, backend=FakeBackend(script), **overrides)

    return factory


@pytest.fixture
def services(make_services) -> Services:
    return make_services()


@pytest.fixture
def client(services: Services) -> TestClient:
    return TestClient(create_app(services=services))


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture
def utc() -> Callable[..., datetime]:
    def build(*args) -> datetime:
        return datetime(*args, tzinfo=timezone.utc)

    return build


@pytest.fixture
def breaker_factory(fake_clock: FakeClock) -> Callable[..., CircuitBreaker]:
    def build(threshold: int = 5, open_duration: float = 60.0) -> CircuitBreaker:
        return CircuitBreaker(threshold=threshold, open_duration=open_duration, clock=fake_clock)

    return build


@pytest.fixture
def image_factory() -> Callable[..., bytes]:
    return make_image_bytes


@pytest.fixture
def backend_factory() -> Callable[..., FakeBackend]:
    return FakeBackend


@pytest.fixture
def usage_logger_factory() -> Callable[..., MemoryUsageLogger]:
    return MemoryUsageLogger


@pytest.fixture
def user_id() -> str:
    return TEST_USER
