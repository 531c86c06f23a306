from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Sequence

from regcreds.src.config import load_config
from regcreds.src.health import start_health_server
from regcreds.src.kube import build_core_client, load_kube_configuration
from regcreds.src.metrics import METRICS
from regcreds.src.providers import EcrTokenSource, default_providers
from regcreds.src.reconcile import NamespaceReconciler
from regcreds.src.refresh import RefreshOrchestrator
from regcreds.src.watcher import NamespaceWatcher

RUNTIME_VERSION = "1.0.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r'(?i)("(?:auth|password|authorizationToken)"\s*:\s*")([^"]*)(")'),
        r"\1[REDACTED]\3",
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


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main(argv: Sequence[str] | None = None) -> None:
    """Refresher entrypoint: configure logging, wire the refresh engine, and watch namespaces."""
    configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting up...")

    cfg = load_config(argv)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    logger.info("Using AWS Account: %s", ",".join(cfg.aws_account_ids))
    logger.info("Using AWS Region: %s", cfg.aws_region)
    logger.info("Using AWS Assume Role: %s", cfg.aws_assume_role)
    logger.info("Refresh Interval (minutes): %d", cfg.refresh_minutes)
    logger.info("Retry Timer: %s", cfg.retry.strategy)
    logger.info("Token Generation Retries: %d", cfg.retry.max_retries)
    logger.info("Token Generation Retry Delay (seconds): %d", cfg.retry.delay_seconds)

    load_kube_configuration()
    core_api = build_core_client()

    token_source = EcrTokenSource(
        region=cfg.aws_region,
        account_ids=cfg.aws_account_ids,
        assume_role=cfg.aws_assume_role,
    )
    orchestrator = RefreshOrchestrator(
        providers=default_providers(cfg.secret_name, token_source),
        reconciler=NamespaceReconciler(core_api=core_api),
        retry_config=cfg.retry,
        excluded_namespaces=cfg.excluded_namespaces,
        skip_system_namespace=cfg.skip_kube_system,
    )
    watcher = NamespaceWatcher(
        core_api=core_api,
        handler=orchestrator.refresh_namespace,
        resync_seconds=cfg.refresh_minutes * 60,
    )

    health_server = start_health_server(ready=watcher.ready, port=cfg.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    watcher.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logger.info("Refresher stopped")


if __name__ == "__main__":
    main()
