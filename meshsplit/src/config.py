from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:       Namespace holding the managed Services and their Deployments.
        services:        Names of the Services whose routing is managed.
        env_label:       Pod label carrying the virtual environment value.
        header_key:      Request header matched by the generated routes.
        separator:       Hierarchy separator inside virtual environment values.
        resync_seconds:  Watch timeout, after which every service is reconciled again.
        health_port:     Port of the health/metrics server.
        log_level:       Root logger level name.
    """

    namespace: str
    services: tuple[str, ...]
    env_label: str = "virtual-env"
    header_key: str = "x-virtual-env"
    separator: str = "."
    resync_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default)
    if not value.strip():
        raise ConfigError(f"{name} must be a non-empty string")
    return value.strip()


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    ``MANAGED_SERVICES`` is required; every other variable has a default.
    Raises :class:`ConfigError` on missing or malformed values.
    """
    values = env if env is not None else os.environ

    services = tuple(
        name.strip() for name in values.get("MANAGED_SERVICES", "").split(",") if name.strip()
    )
    if not services:
        raise ConfigError("MANAGED_SERVICES must list at least one service name")

    # The separator is not stripped: whitespace is a legal separator.
    separator = values.get("VIRTUAL_ENV_SEPARATOR", ".")
    if not separator:
        raise ConfigError("VIRTUAL_ENV_SEPARATOR must not be empty")

    return ControllerConfig(
        namespace=_non_empty(values, "WATCH_NAMESPACE", "default"),
        services=services,
        env_label=_non_empty(values, "VIRTUAL_ENV_LABEL", "virtual-env"),
        header_key=_non_empty(values, "VIRTUAL_ENV_HEADER", "x-virtual-env"),
        separator=separator,
        resync_seconds=env_int(values, "RESYNC_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
