"""Service configuration with environment-variable fallbacks."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from typing import List, Mapping, Optional

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


@dataclass
class Config:
    """Runtime settings; zero-valued fields are filled by :func:`load_from_env`."""

    grpc_port: int = 0
    consul_addr: str = ""
    etcd_endpoints: List[str] = field(default_factory=list)
    tx_service_name: str = ""
    record_svc_name: str = ""
    service_name: str = ""
    instance_id: str = ""
    advertise_host: str = ""
    env: str = ""
    extra_tags: List[str] = field(default_factory=list)
    record_timeout: float = 0.0
    report_service_url: str = ""
    card_service_url: str = ""
    notify_service_url: str = ""
    notify_min_payout: int = 0


def _env_str(environ: Mapping[str, str], key: str, default: str) -> str:
    value = environ.get(key, "")
    return value if value else default


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    value = environ.get(key, "")
    if value and _INT_RE.fullmatch(value):
        number = int(value)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
    return default


def load_from_env(
    cfg: Optional[Config] = None, environ: Optional[Mapping[str, str]] = None
) -> Config:
    """Return a copy of ``cfg`` with its empty fields taken from the environment."""
    env = os.environ if environ is None else environ
    cfg = replace(cfg) if cfg is not None else Config()

    if not cfg.grpc_port:
        cfg.grpc_port = _env_int(env, "GRPC_PORT", 9201)
    if not cfg.consul_addr:
        cfg.consul_addr = _env_str(env, "CONSUL_ADDR", "127.0.0.1:8500")
    if not cfg.etcd_endpoints:
        cfg.etcd_endpoints = _env_str(env, "ETCD_ENDPOINTS", "127.0.0.1:2379").split(",")
    if not cfg.tx_service_name:
        cfg.tx_service_name = _env_str(env, "TX_SERVICE_NAME", "tx")
    if not cfg.record_svc_name:
        cfg.record_svc_name = _env_str(env, "RECORD_SERVICE_NAME", "record")
    if not cfg.advertise_host:
        cfg.advertise_host = _env_str(env, "ADVERTISE_HOST", "127.0.0.1")
    if not cfg.env:
        cfg.env = _env_str(env, "ENV", "dev")
    if not cfg.record_timeout:
        cfg.record_timeout = 2.0
    if not cfg.instance_id:
        cfg.instance_id = _env_str(env, "INSTANCE_ID", "")
    if not cfg.report_service_url:
        cfg.report_service_url = _env_str(env, "REPORT_SERVICE_URL", "")
    if not cfg.card_service_url:
        cfg.card_service_url = _env_str(env, "CARD_SERVICE_URL", "")
    if not cfg.notify_service_url:
        cfg.notify_service_url = _env_str(env, "NOTIFY_SERVICE_URL", "")
    if not cfg.notify_min_payout:
        cfg.notify_min_payout = _env_int(env, "GAME_NOTIFY_MIN_PAYOUT", 1000)
    return cfg