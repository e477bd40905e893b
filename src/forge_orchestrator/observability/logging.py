"""Structured logging setup: structlog over stdlib handlers with redaction and correlation."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

import structlog

LogFormat = Literal["json", "console"]

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOGGER_NAME: Final[str] = "forge_orchestrator"

_CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "project_id",
    "stage",
    "task_id",
    "conflict_id",
    "tier",
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "access_token",
    "auth_token",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Rendering and sink options for ``configure_logging``."""

    level: int | str = "INFO"
    log_format: LogFormat = "json"
    log_file: Path | str | None = None
    redact_secrets: bool = True
    logger_name: str = _DEFAULT_LOGGER_NAME


def configure_logging(
    observability_config: Mapping[str, object] | LoggingConfig | None = None,
) -> logging.Logger:
    """Configure structlog and the package stdlib logger; return the stdlib logger.

    Accepts either a ``LoggingConfig`` or a mapping compatible with the
    ``[observability]`` section of ``forge.toml``.
    """

    config = (
        observability_config
        if isinstance(observability_config, LoggingConfig)
        else _config_from_mapping(observability_config or {})
    )
    level = _parse_log_level(config.level)

    handler: logging.Handler
    if config.log_file is None:
        handler = logging.StreamHandler(sys.stderr)
    else:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))

    stdlib_logger = logging.getLogger(config.logger_name)
    for existing in list(stdlib_logger.handlers):
        stdlib_logger.removeHandler(existing)
        existing.close()
    stdlib_logger.addHandler(handler)
    stdlib_logger.setLevel(level)
    stdlib_logger.propagate = False

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if config.redact_secrets:
        processors.append(redact_event)
    if config.log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    return stdlib_logger


def redact_event(
    _logger: object, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking secret-looking keys and inline credentials."""
    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields (project, task, conflict ids) for log lines in scope."""
    bound = {key: value for key, value in fields.items() if value is not None}
    unknown = sorted(key for key in bound if key not in _CORRELATION_KEYS)
    if unknown:
        raise ValueError(f"unsupported correlation keys: {unknown}")
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_correlation_context() -> dict[str, Any]:
    return {
        key: value
        for key, value in structlog.contextvars.get_contextvars().items()
        if key in _CORRELATION_KEYS
    }


def _config_from_mapping(payload: Mapping[str, object]) -> LoggingConfig:
    raw_level = payload.get("log_level", "INFO")
    raw_format = payload.get("log_format", "json")
    raw_file = payload.get("log_file")
    return LoggingConfig(
        level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
        log_format="console" if raw_format == "console" else "json",
        log_file=raw_file if isinstance(raw_file, (str, Path)) and raw_file else None,
        redact_secrets=bool(payload.get("redact_secrets", True)),
    )


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {value!r}")
    return resolved


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _PROVIDER_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = [
    "LogFormat",
    "LoggingConfig",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "redact_event",
]
