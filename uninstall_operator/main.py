"""
Uninstall Operator — entrypoint.

Wires the pieces together and maps the run onto a process exit code:
  0  every resource removed
  1  precondition failure, change feed never synced, or any other fatal error
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import replace
from typing import Optional

from uninstall_operator.config import Settings, settings
from uninstall_operator.controller import UninstallController
from uninstall_operator.errors import UninstallError
from uninstall_operator.grace import GracePeriodPolicy
from uninstall_operator.orchestrator import UninstallOrchestrator
from uninstall_operator.services.change_feed import KubernetesChangeFeed
from uninstall_operator.services.kubernetes_service import KubernetesService
from uninstall_operator.status_server import StatusServer
from uninstall_operator.workqueue import RateLimitingQueue, default_rate_limiter

logger = logging.getLogger("uninstall-operator")


def parse_args(argv: Optional[list[str]] = None, cfg: Settings = settings) -> Settings:
    """CLI flags override the environment."""
    p = argparse.ArgumentParser(description="Remove every storage system resource from the cluster")
    p.add_argument("--namespace", default=cfg.NAMESPACE,
                   help=f"System namespace (default {cfg.NAMESPACE})")
    p.add_argument("--force", action="store_true", default=cfg.FORCE,
                   help="Uninstall even if the manager is not ready or volumes are in use")
    p.add_argument("--status-port", type=int, default=cfg.STATUS_PORT,
                   help="Port of the status API, 0 to disable")
    p.add_argument("--log-level", default=cfg.LOG_LEVEL, help="Logging level")
    args = p.parse_args(argv)
    return replace(
        cfg,
        NAMESPACE=args.namespace,
        FORCE=args.force,
        STATUS_PORT=args.status_port,
        LOG_LEVEL=args.log_level.upper(),
    )


def setup_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_controller(cfg: Settings) -> UninstallController:
    store = KubernetesService(cfg)
    orchestrator = UninstallOrchestrator(
        store,
        namespace=cfg.NAMESPACE,
        force=cfg.FORCE,
        grace=GracePeriodPolicy(cfg.GRACE_PERIOD_SECONDS),
    )
    queue = RateLimitingQueue(
        default_rate_limiter(cfg.BACKOFF_BASE_SECONDS, cfg.BACKOFF_MAX_SECONDS, cfg.QUEUE_RATE_LIMIT),
        name="longhorn-uninstall",
    )
    return UninstallController(
        orchestrator,
        store,
        KubernetesChangeFeed(store, watch_timeout=cfg.WATCH_TIMEOUT),
        namespace=cfg.NAMESPACE,
        queue=queue,
        sync_timeout=cfg.SYNC_TIMEOUT,
        resync_interval=cfg.RESYNC_INTERVAL,
    )


def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(argv)
    setup_logging(cfg.LOG_LEVEL)
    logger.info(
        f"Uninstall Operator starting (namespace={cfg.NAMESPACE}, force={cfg.FORCE}, "
        f"grace_period={cfg.GRACE_PERIOD_SECONDS}s)"
    )

    stop = threading.Event()

    def _on_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping after the current pass")
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    controller = build_controller(cfg)
    status_server = None
    if cfg.STATUS_PORT:
        status_server = StatusServer(controller, cfg.STATUS_HOST, cfg.STATUS_PORT)
        status_server.start()

    try:
        controller.run(stop)
    except UninstallError as e:
        logger.error(f"Uninstall failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"Uninstall failed unexpectedly: {e}", exc_info=True)
        return 1
    finally:
        if status_server is not None:
            status_server.stop()

    return 0 if controller.shutdown.is_set() else 1


if __name__ == "__main__":
    sys.exit(main())
