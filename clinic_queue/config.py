from __future__ import annotations

# Runtime settings.
#
# Defaults live here, environment variables (CLINIC_QUEUE_*) override them and
# command-line flags override both. Every CLI builds its parser with
# `add_mqtt_args` so all components agree on broker and namespace.

import argparse
import os
from dataclasses import dataclass, fields

ENV_PREFIX = "CLINIC_QUEUE_"
DEFAULT_NAMESPACE = "clinic/v0"


@dataclass
class Settings:
    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = 1883
    namespace: str = DEFAULT_NAMESPACE

    # Seconds an operation may wait for a ticket/service lock.
    lock_timeout: float = 2.0
    # Seconds a client waits for a reply before giving up (retryable).
    request_timeout: float = 8.0
    # Server threads running requests; operations on different tickets
    # only wait for each other when all of them are busy.
    request_workers: int = 8

    feed_capacity: int = 1000
    display_now_serving: int = 4
    display_next: int = 8
    display_every: float = 2.0

    # Shared operator token; empty disables the check.
    operator_token: str = ""
    log_level: str = "INFO"
    seed_demo: bool = True

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(raw, f.default)
        return cls(**values)


def _coerce(raw: str, default: object) -> object:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def add_mqtt_args(p: argparse.ArgumentParser, settings: Settings | None = None) -> None:
    s = settings or Settings.from_env()
    p.add_argument("--mqtt-host", default=s.mqtt_host)
    p.add_argument("--mqtt-port", type=int, default=s.mqtt_port)
    p.add_argument("--namespace", default=s.namespace)
    p.add_argument(
        "--timeout",
        type=float,
        default=s.request_timeout,
        help="seconds to wait for the dispatch server to answer",
    )
