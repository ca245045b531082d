from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from apisix_ingress.src.apisix import ApisixRegistry
from apisix_ingress.src.config import ConfigError, ControllerConfig, load_config
from apisix_ingress.src.health import HealthState, start_health_server
from apisix_ingress.src.kube import KubeClients, build_clients, load_kube_configuration
from apisix_ingress.src.leader import LeaseLeaderElector
from apisix_ingress.src.metrics import METRICS
from apisix_ingress.src.supervisor import Supervisor

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|x-api-key|admin[_-]?key)\b[\"']?\s*[:=]\s*[\"']?)([^\s,;\"']+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str | None = None) -> None:
    log_level = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def build_elector(cfg: ControllerConfig, clients: KubeClients) -> LeaseLeaderElector | None:
    if not cfg.leader_election_enabled:
        return None
    return LeaseLeaderElector(
        coordination_api=clients.coordination,
        namespace=cfg.leader_election_namespace,
        lease_name=cfg.leader_election_lease_name,
        identity=cfg.leader_election_identity,
        lease_duration_seconds=cfg.lease_duration_seconds,
        renew_deadline_seconds=cfg.renew_deadline_seconds,
        retry_period_seconds=cfg.retry_period_seconds,
    )


def main() -> None:
    """Controller entrypoint: configure logging, elect a leader and run the supervisor."""
    configure_logging()
    logger = logging.getLogger(__name__)
    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "apisix_version": cfg.apisix_version,
            "ingress_version": cfg.ingress_version,
        }
    )

    load_kube_configuration()
    clients = build_clients()
    health = HealthState()
    supervisor = Supervisor(
        cfg,
        clients,
        ApisixRegistry(),
        health,
        elector=build_elector(cfg, clients),
    )
    health_server = start_health_server(
        ready=supervisor.ready,
        health=health,
        port=cfg.health_port,
        leader=supervisor.leader if cfg.leader_election_enabled else None,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Starting ingress controller for cluster %s (class=%s, apisix=%s, ingress=%s)",
        cfg.cluster_name,
        cfg.ingress_class,
        cfg.apisix_version,
        cfg.ingress_version,
    )
    try:
        supervisor.run(shutdown_event)
    finally:
        health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
