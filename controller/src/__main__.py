from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from controller.src.clb import build_clb_client_from_env
from controller.src.controller import (
    build_config_cache_from_env,
    build_controller_from_env,
    env_int,
)
from controller.src.health import start_health_server
from controller.src.kube import build_clients, load_kube_configuration
from controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|secret_?id|secret_?key"
            r"|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(\"Secret(?:Id|Key)\"\s*:\s*\")([^\"]+)"),
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


def main() -> None:
    """Synchronizer entrypoint: configure logging, load config, and run the pod watch loop.

    Missing cloud credentials or an unreadable rules document abort startup;
    there is no degraded mode without both.
    """
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()
    clb = build_clb_client_from_env()

    cache = build_config_cache_from_env(resolver=clb)
    cache.refresh(force=True)

    controller = build_controller_from_env(
        core_api=core_api,
        apps_api=apps_api,
        cache=cache,
        clb=clb,
    )

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(
        watching=controller.ready,
        config_loaded=cache.loaded,
        port=health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logging.getLogger(__name__).info("Starting pod load balancer synchronizer")
    controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logging.getLogger(__name__).info("Pod load balancer synchronizer stopped")


if __name__ == "__main__":
    main()
