from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.config import Settings
from app.services.auth import AuthVerifier, StaticTokenVerifier
from app.services.circuit_breaker import CircuitBreaker
from app.services.gemini_client import AIBackend, GeminiClient
from app.services.generation import GenerationOrchestrator
from app.services.pipeline import RequestPipeline
from app.services.quota import InMemoryQuotaStore, QuotaGate, QuotaStore
from app.services.usage_log import JsonlUsageLogger, UsageLogger


@dataclass(slots=True)
class Services:
    """
    Every long-lived collaborator of the API, built once at startup.

    Routes receive this through a FastAPI dependency instead of reaching for
    module-level singletons, so tests can swap any piece.
    """

    settings: Settings
    auth: AuthVerifier
    circuit_breaker: CircuitBreaker
    orchestrator: GenerationOrchestrator
    quota_gate: QuotaGate
    pipeline: RequestPipeline
    usage_logger: Optional[UsageLogger] = None


def build_services(
    settings: Settings,
    backend: Optional[AIBackend] = None,
    quota_store: Optional[QuotaStore] = None,
    auth: Optional[AuthVerifier] = None,
    usage_logger: Optional[UsageLogger] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
) -> Services:
    """Wire the services graph; any argument left as None gets its default."""
    if backend is None:
        backend = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout=settings.gemini_timeout_seconds,
        )

    breaker = circuit_breaker or CircuitBreaker(
        threshold=settings.circuit_threshold,
        open_duration=settings.circuit_open_seconds,
    )
    orchestrator = GenerationOrchestrator(
        backend=backend,
        circuit_breaker=breaker,
        base_delay=settings.generation_base_delay_seconds,
        max_attempts=settings.generation_max_attempts,
    )
    quota_gate = QuotaGate(
        store=quota_store or InMemoryQuotaStore(),
        default_limit=settings.default_monthly_limit,
    )
    if usage_logger is None:
        usage_logger = JsonlUsageLogger(settings.usage_log_path)

    return Services(
        settings=settings,
        auth=auth or StaticTokenVerifier(settings.api_tokens),
        circuit_breaker=breaker,
        orchestrator=orchestrator,
        quota_gate=quota_gate,
        pipeline=RequestPipeline(orchestrator, quota_gate, usage_logger),
        usage_logger=usage_logger,
    )
