from __future__ import annotations

# Runtime configuration.
#
# Every entrypoint builds a `Settings` from argparse flags. Flag defaults read
# SALON_* environment variables so a deployment can be configured without
# changing the command line.

import argparse
import os
from dataclasses import dataclass, field

from .errors import ValidationError

DEFAULT_SERVICES: dict[str, tuple[str, ...]] = {
    "male": ("Haircut", "Beard Trim", "Head Massage"),
    "female": ("Haircut", "Facial", "Manicure"),
}


@dataclass(frozen=True)
class ServiceCatalog:
    """Queue categories and the services each one offers."""

    services: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_SERVICES))

    @property
    def queues(self) -> tuple[str, ...]:
        return tuple(self.services)

    def require_queue(self, queue: str) -> str:
        if queue not in self.services:
            raise ValidationError(f"unknown queue {queue!r}; expected one of {', '.join(self.queues)}")
        return queue

    def require_service(self, queue: str, service: str) -> str:
        offered = self.services[self.require_queue(queue)]
        # An empty list means the queue accepts any service label.
        if offered and service not in offered:
            raise ValidationError(f"service {service!r} is not offered in the {queue} queue")
        return service

    @classmethod
    def parse(cls, text: str) -> ServiceCatalog:
        """Parse `male=Haircut,Beard Trim;female=Facial` style strings."""
        services: dict[str, tuple[str, ...]] = {}
        for part in text.split(";"):
            part = part.strip()
            if not part:
                continue
            queue, _, names = part.partition("=")
            queue = queue.strip().lower()
            if not queue:
                raise ValueError(f"bad catalog entry {part!r}")
            services[queue] = tuple(n.strip() for n in names.split(",") if n.strip())
        if not services:
            raise ValueError("catalog must define at least one queue")
        return cls(services=services)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///salon_tokens.db"
    store_timeout: float = 5.0
    retry_attempts: int = 3
    retry_backoff: float = 0.05
    catalog: ServiceCatalog = field(default_factory=ServiceCatalog)

    otp_required: bool = False
    otp_ttl_seconds: float = 300.0
    otp_expose_codes: bool = False

    mqtt_host: str | None = None
    mqtt_port: int = 1883
    namespace: str = "salon/v1"

    @property
    def uses_memory_store(self) -> bool:
        return self.database_url == "memory"


def _env(name: str, default: str) -> str:
    return os.environ.get(f"SALON_{name}", default)


def _env_flag(name: str) -> bool:
    return _env(name, "").lower() in ("1", "true", "yes", "on")


def add_store_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--database-url",
        default=_env("DATABASE_URL", Settings.database_url),
        help="SQLAlchemy URL, or 'memory' for a process-local store",
    )
    p.add_argument("--store-timeout", type=float, default=float(_env("STORE_TIMEOUT", "5.0")))
    p.add_argument("--retry-attempts", type=int, default=int(_env("RETRY_ATTEMPTS", "3")))
    p.add_argument(
        "--catalog",
        default=_env("CATALOG", ""),
        help="queues and services, e.g. 'male=Haircut,Beard Trim;female=Facial'",
    )


def add_mqtt_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--mqtt-host",
        default=_env("MQTT_HOST", "") or None,
        help="publish queue events to this MQTT broker",
    )
    p.add_argument("--mqtt-port", type=int, default=int(_env("MQTT_PORT", "1883")))
    p.add_argument("--namespace", default=_env("NAMESPACE", "salon/v1"))


def add_otp_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--otp-required",
        action="store_true",
        default=_env_flag("OTP_REQUIRED"),
        help="require a verified mobile before issuing a token",
    )
    p.add_argument("--otp-ttl", type=float, default=float(_env("OTP_TTL", "300")))
    p.add_argument(
        "--otp-expose-codes",
        action="store_true",
        default=_env_flag("OTP_EXPOSE_CODES"),
        help="return OTP codes in API responses (development only)",
    )


def settings_from_args(args: argparse.Namespace) -> Settings:
    catalog_text = getattr(args, "catalog", "")
    return Settings(
        database_url=getattr(args, "database_url", Settings.database_url),
        store_timeout=getattr(args, "store_timeout", Settings.store_timeout),
        retry_attempts=getattr(args, "retry_attempts", Settings.retry_attempts),
        catalog=ServiceCatalog.parse(catalog_text) if catalog_text else ServiceCatalog(),
        otp_required=getattr(args, "otp_required", False),
        otp_ttl_seconds=getattr(args, "otp_ttl", Settings.otp_ttl_seconds),
        otp_expose_codes=getattr(args, "otp_expose_codes", False),
        mqtt_host=getattr(args, "mqtt_host", None),
        mqtt_port=getattr(args, "mqtt_port", Settings.mqtt_port),
        namespace=getattr(args, "namespace", Settings.namespace),
    )
