"""Probe backend endpoints and report which ones can serve requests."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from .classifier import ErrorRecord, classify
from .client import OllamaClient
from .config import ClientConfig
from .logging import configure_logging
from .metrics import maybe_start_metrics
from .model_selection import ModelSelectionPolicy

log = structlog.get_logger()

PROBE_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class EndpointReport:
    endpoint: str
    reachable: bool
    models: tuple[str, ...] = ()
    error: ErrorRecord | None = None
    latency_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "endpoint": self.endpoint,
            "reachable": self.reachable,
            "models": list(self.models),
            "latencySeconds": self.latency_seconds,
        }
        if self.error is not None:
            out["error"] = {
                "code": self.error.code,
                "kind": self.error.kind.value,
                "message": self.error.user_message,
                "details": self.error.technical_details,
                "suggestedAction": self.error.suggested_action,
            }
        return out


@dataclass(frozen=True)
class DiagnosticReport:
    endpoints: tuple[EndpointReport, ...]
    missing_models: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = field(default_factory=tuple)

    @property
    def working_endpoints(self) -> list[str]:
        return [e.endpoint for e in self.endpoints if e.reachable]

    @property
    def ok(self) -> bool:
        return bool(self.working_endpoints)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "workingEndpoints": self.working_endpoints,
            "endpoints": [e.to_dict() for e in self.endpoints],
            "missingModels": list(self.missing_models),
            "recommendations": list(self.recommendations),
        }


async def _probe(client: OllamaClient, endpoint: str, timeout: float) -> EndpointReport:
    started = time.monotonic()
    try:
        models = await client.list_models_at(endpoint, timeout=timeout)
    except Exception as e:
        record = classify(e, context="diagnostics")
        return EndpointReport(endpoint=endpoint, reachable=False, error=record)
    latency = time.monotonic() - started
    log.info("ollama_endpoint_ok", endpoint=endpoint, models=len(models), latency_seconds=round(latency, 3))
    return EndpointReport(endpoint=endpoint, reachable=True, models=tuple(models), latency_seconds=latency)


def _recommendations(reports: list[EndpointReport], missing: list[str]) -> list[str]:
    out: list[str] = []
    working = [r.endpoint for r in reports if r.reachable]
    if not working:
        out.append("No Ollama endpoint is reachable. Make sure Ollama is installed and running.")
        out.extend(r.error.suggested_action for r in reports if r.error is not None and r.error.suggested_action)
    else:
        out.append(f"Found {len(working)} working endpoint(s): {', '.join(working)}")
    out.extend(f"Install the missing model with: ollama pull {m}" for m in missing)
    return list(dict.fromkeys(out))


async def diagnose(
    cfg: ClientConfig | None = None,
    endpoints: list[str] | None = None,
    client: OllamaClient | None = None,
    probe_timeout: float = PROBE_TIMEOUT_SECONDS,
) -> DiagnosticReport:
    """
    Probe each endpoint with ``GET /api/tags``.

    Each probe is bounded by ``probe_timeout``, capped at the configured
    request timeout. Defaults to the configured candidate list. Models
    named by the selection policy that no working endpoint has installed
    are reported as missing.
    """
    cfg = cfg or (client.cfg if client is not None else ClientConfig())
    timeout = min(probe_timeout, cfg.timeout_seconds)
    owned = client is None
    client = client or OllamaClient(cfg)
    try:
        targets = endpoints or cfg.endpoints()
        reports = list(await asyncio.gather(*(_probe(client, e, timeout) for e in targets)))
    finally:
        if owned:
            await client.close()

    installed = {m for r in reports if r.reachable for m in r.models}
    wanted = ModelSelectionPolicy.from_config(cfg).models()
    missing = [m for m in wanted if m not in installed] if any(r.reachable for r in reports) else []

    report = DiagnosticReport(
        endpoints=tuple(reports),
        missing_models=tuple(missing),
        recommendations=tuple(_recommendations(reports, missing)),
    )
    log.info(
        "ollama_diagnostics_done",
        endpoints=len(reports),
        working=len(report.working_endpoints),
        missing_models=list(missing),
    )
    return report


async def _run(cfg: ClientConfig, endpoints: list[str] | None) -> DiagnosticReport:  # pragma: no cover
    probe_timeout = min(cfg.timeout_seconds, PROBE_TIMEOUT_SECONDS)
    async with OllamaClient(cfg, client=httpx.AsyncClient(timeout=probe_timeout)) as client:
        return await diagnose(cfg, endpoints=endpoints, client=client, probe_timeout=probe_timeout)


def main() -> None:  # pragma: no cover
    cfg = ClientConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=[s for s in (cfg.api_key,) if s])
    maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)

    report = asyncio.run(_run(cfg, sys.argv[1:] or None))
    print(json.dumps(report.to_dict(), indent=2))
    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":  # pragma: no cover
    main()
