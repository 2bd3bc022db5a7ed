"""
Settings for the uninstall job, read from env vars once at import.
CLI flags (see main.py) override a copy of these.
"""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = _env_bool("IN_CLUSTER")

    # CRD
    CRD_GROUP: str = os.environ.get("CRD_GROUP", "longhorn.io")
    CRD_VERSION: str = os.environ.get("CRD_VERSION", "v1beta2")

    # Uninstall
    NAMESPACE: str = os.environ.get("LONGHORN_NAMESPACE", "longhorn-system")
    FORCE: bool = _env_bool("UNINSTALL_FORCE")
    GRACE_PERIOD_SECONDS: float = float(os.environ.get("GRACE_PERIOD_SECONDS", "90"))

    # Work queue (rate limit in `limits` notation, e.g. "100/second")
    QUEUE_RATE_LIMIT: str = os.environ.get("QUEUE_RATE_LIMIT", "100/second")
    BACKOFF_BASE_SECONDS: float = float(os.environ.get("BACKOFF_BASE_SECONDS", "0.1"))
    BACKOFF_MAX_SECONDS: float = float(os.environ.get("BACKOFF_MAX_SECONDS", "2"))

    # Change feed
    SYNC_TIMEOUT: float = float(os.environ.get("SYNC_TIMEOUT", "300"))
    RESYNC_INTERVAL: float = float(os.environ.get("RESYNC_INTERVAL", "30"))
    WATCH_TIMEOUT: int = int(os.environ.get("WATCH_TIMEOUT", "300"))

    # Status API (port 0 disables the server)
    STATUS_HOST: str = os.environ.get("STATUS_HOST", "0.0.0.0")
    STATUS_PORT: int = int(os.environ.get("STATUS_PORT", "0"))

    # Observability
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


settings = Settings()
