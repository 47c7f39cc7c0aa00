import json
import os
from dataclasses import dataclass, fields

from .logger import get_logger

ENV_PREFIX = "ROLLOUT_"


@dataclass
class Settings:
    """Process-wide settings for the CLI and the cluster backends"""
    backend: str = "kubernetes"  # kubernetes | memory
    namespace: str = "default"
    kube_context: str = None
    in_cluster: bool = False
    prometheus_url: str = "http://prometheus:9090"
    registry: str = None  # Prefix for artifact references derived from a version
    request_timeout_s: float = 30.0  # Bound on each cluster API call
    retry_max_attempts: int = 2  # Retries of transient cluster API failures
    retry_base_delay_s: float = 0.5
    webhook_timeout_s: float = 30.0
    log_level: str = "INFO"


def _coerce(value, current):
    if isinstance(current, bool):
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def load_settings(path=None, environ=None):
    """Defaults, then the JSON file at path, then ROLLOUT_* environment variables"""
    logger = get_logger("config")
    settings = Settings()
    names = {f.name for f in fields(Settings)}

    if path:
        with open(path) as f:
            data = json.load(f)
        for key, value in data.items():
            if key not in names:
                logger.warning(f"Ignoring unknown setting {key} in {path}")
                continue
            setattr(settings, key, value)

    environ = os.environ if environ is None else environ
    for name in names:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        default = getattr(Settings, name, None)
        try:
            setattr(settings, name, _coerce(raw, default) if default is not None else raw)
        except ValueError:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}")
    return settings


def load_pipeline_overrides(path):
    """Pipeline options (blue_green, canary, rollback, build settings) from a JSON file"""
    if not path:
        return {}
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Pipeline options in {path} must be a JSON object")
    return data
