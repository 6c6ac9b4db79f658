from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path

from .clients import Protocol, Security, TargetConfig
from .engine.config import parse_duration
from .errors import ConfigError

DEFAULT_BASE_URL = "http://localhost:8000/challenge"
DEFAULT_RPC_ADDRESS = "localhost:6566"
DEFAULT_NAMESPACE = "test"
DEFAULT_CHALLENGE_ID = "daily-challenges"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class RunSettings:
    """Validated run configuration; built once at startup."""

    workload: str
    base_url: str = DEFAULT_BASE_URL
    rpc_address: str = DEFAULT_RPC_ADDRESS
    rpc_transport: Protocol = Protocol.GRPC
    security: Security = Security.PLAINTEXT
    target_rps: float | None = None
    target_eps: float | None = None
    target_vus: int | None = None
    iterations: int | None = None
    duration: float | None = None
    namespace: str = DEFAULT_NAMESPACE
    challenge_id: str = DEFAULT_CHALLENGE_ID
    fixtures: Path | None = None
    seed: int | None = None
    output_dir: Path | None = None
    http_timeout: float = 30.0
    rpc_timeout: float = 10.0
    graceful_stop: float = 30.0
    threshold_interval: float = 10.0
    call_log: Path | None = None
    slow_call_ms: float = 1000.0
    log_level: str = "INFO"
    charts: bool = False
    dry_run: bool = False

    def __post_init__(self) -> None:
        if not self.workload:
            raise ConfigError("a workload name is required")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"BASE_URL must be an http(s) URL, got {self.base_url!r}")
        if not self.rpc_address:
            raise ConfigError("EVENT_HANDLER_ADDR must not be empty")
        for name in ("target_rps", "target_eps"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name.upper()} must be > 0, got {value}")
        for name in ("target_vus", "iterations"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ConfigError(f"{name.upper()} must be >= 1, got {value}")
        if self.duration is not None and self.duration <= 0:
            raise ConfigError(f"LOADSIM_DURATION must be > 0, got {self.duration}")
        for name in ("http_timeout", "rpc_timeout", "slow_call_ms"):
            value = getattr(self, name)
            if value is None or value <= 0:
                raise ConfigError(f"{name} must be > 0, got {value}")
        if self.graceful_stop < 0 or self.threshold_interval < 0:
            raise ConfigError("GRACEFUL_STOP and THRESHOLD_INTERVAL must be >= 0")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"unknown log level {self.log_level!r}")

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> RunSettings:
        """Parse raw CLI/environment strings, failing fast on the first bad value."""
        return cls(
            workload=(args.workload or "").strip(),
            base_url=args.base_url,
            rpc_address=args.rpc_address,
            rpc_transport=_transport(args.rpc_transport),
            security=Security.SECURE if _flag("RPC_SECURE", args.rpc_secure) else Security.PLAINTEXT,
            target_rps=_number("TARGET_RPS", args.target_rps, float),
            target_eps=_number("TARGET_EPS", args.target_eps, float),
            target_vus=_number("TARGET_VUS", args.target_vus, int),
            iterations=_number("ITERATIONS", args.iterations, int),
            duration=parse_duration(args.duration) if args.duration else None,
            namespace=args.namespace,
            challenge_id=args.challenge_id,
            fixtures=Path(args.fixtures) if args.fixtures else None,
            seed=_number("LOADSIM_SEED", args.seed, int),
            output_dir=Path(args.output_dir) if args.output_dir else None,
            http_timeout=parse_duration(args.http_timeout),
            rpc_timeout=parse_duration(args.rpc_timeout),
            graceful_stop=parse_duration(args.graceful_stop),
            threshold_interval=parse_duration(args.threshold_interval),
            call_log=Path(args.call_log) if args.call_log else None,
            slow_call_ms=_number("SLOW_CALL_MS", args.slow_call_ms, float),
            log_level=args.log_level,
            charts=bool(args.charts),
            dry_run=bool(args.dry_run),
        )

    def target(self) -> TargetConfig:
        return TargetConfig(
            base_url=self.base_url,
            rpc_address=self.rpc_address,
            rpc_transport=self.rpc_transport,
            security=self.security,
            http_timeout=self.http_timeout,
            rpc_timeout=self.rpc_timeout,
            default_headers={"X-Namespace": self.namespace},
        )


def _number(name: str, raw: str | int | float | None, kind: type) -> int | float | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        return kind(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a {kind.__name__}, got {raw!r}") from None


def _flag(name: str, raw: str | bool | None) -> bool:
    if isinstance(raw, bool):
        return raw
    text = (raw or "").strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _transport(raw: str) -> Protocol:
    try:
        protocol = Protocol((raw or "").strip().lower())
    except ValueError:
        raise ConfigError(f"RPC_TRANSPORT must be grpc or kafka, got {raw!r}") from None
    if protocol is Protocol.HTTP:
        raise ConfigError("RPC_TRANSPORT must be grpc or kafka, got 'http'")
    return protocol


__all__ = ["RunSettings"]
