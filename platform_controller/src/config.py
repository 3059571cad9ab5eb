from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace scope for the Deployment informer; empty
                         means every namespace.
        default_domain:  Domain used for default application ingresses.  An
                         empty value disables default route provisioning.
        app_manager_workers / release_workers: Worker threads per controller.
        worker_restart_period_seconds: Delay before a crashed worker loop is
                         restarted.
        crd_poll_interval_seconds / crd_ready_timeout_seconds: Readiness poll
                         settings for the custom resource definitions.
    """

    watch_namespace: str = ""
    default_domain: str = ""
    app_manager_workers: int = 1
    release_workers: int = 1
    worker_restart_period_seconds: int = 1
    crd_poll_interval_seconds: int = 1
    crd_ready_timeout_seconds: int = 30
    provision_crds: bool = True
    shutdown_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
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


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load the controller configuration from the environment.

    Every setting has a default suitable for an in-cluster deployment, so an
    empty environment yields a working configuration.  Malformed values raise
    :class:`ConfigError` instead of being silently replaced by defaults.
    """
    values = env if env is not None else os.environ

    poll_interval = env_int(values, "CRD_POLL_INTERVAL_SECONDS", 1, minimum=1)
    ready_timeout = env_int(values, "CRD_READY_TIMEOUT_SECONDS", 30, minimum=1)
    if poll_interval > ready_timeout:
        raise ConfigError(
            "CRD_POLL_INTERVAL_SECONDS must not exceed CRD_READY_TIMEOUT_SECONDS"
        )

    default_domain = values.get("DEFAULT_DOMAIN", "").strip().strip(".")

    return ControllerConfig(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        default_domain=default_domain,
        app_manager_workers=env_int(values, "APP_MANAGER_WORKERS", 1, minimum=1, maximum=64),
        release_workers=env_int(values, "RELEASE_WORKERS", 1, minimum=1, maximum=64),
        worker_restart_period_seconds=env_int(
            values, "WORKER_RESTART_PERIOD_SECONDS", 1, minimum=1
        ),
        crd_poll_interval_seconds=poll_interval,
        crd_ready_timeout_seconds=ready_timeout,
        provision_crds=parse_bool(values.get("PROVISION_CRDS"), default=True),
        shutdown_timeout_seconds=env_int(values, "SHUTDOWN_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=0, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
