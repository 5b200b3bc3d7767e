from __future__ import annotations

import ipaddress
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from gateway.delivery import DEFAULT_TIMEOUT_S, TELEGRAM_API_BASE_URL
from gateway.topics import IpNetwork, Topic, TopicRegistry

DEFAULT_PORT = 8080
DEFAULT_MAX_BODY_BYTES = 50 * 1000 * 1000
CONFIG_PATH_ENV = "GATEWAY_CONFIG"


class ConfigError(RuntimeError):
    pass


def parse_positive_int(raw: Any, fallback: int) -> int:
    try:
        value = int(str(raw).strip())
    except Exception:
        return fallback
    if value <= 0:
        return fallback
    return value


def parse_positive_float(raw: Any, fallback: float) -> float:
    try:
        value = float(str(raw).strip())
    except Exception:
        return fallback
    if value <= 0:
        return fallback
    return value


def is_truthy(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if not isinstance(raw, str):
        return False
    value = raw.strip().lower()
    return value in {"1", "true", "yes", "on"}


def parse_recipients(raw: Any, topic: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"topics.{topic}.recipients must be an array")

    recipients: list[str] = []
    for item in raw:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise ConfigError(f"topics.{topic}.recipients must hold strings or integers")
        value = str(item).strip()
        if not value:
            raise ConfigError(f"topics.{topic}.recipients contains an empty id")
        recipients.append(value)
    return tuple(recipients)


def parse_allow_list(raw: Any, topic: str) -> tuple[IpNetwork, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"topics.{topic}.allow_list must be an array")

    networks: list[IpNetwork] = []
    for item in raw:
        try:
            networks.append(ipaddress.ip_network(str(item).strip(), strict=False))
        except ValueError as exc:
            raise ConfigError(f"topics.{topic}.allow_list has invalid CIDR {item!r}") from exc
    return tuple(networks)


def parse_topics(raw: Any) -> TopicRegistry:
    if raw is None:
        return TopicRegistry()
    if not isinstance(raw, dict):
        raise ConfigError("topics must be a table")

    topics: dict[str, Topic] = {}
    for name, entry in raw.items():
        if not str(name).strip():
            raise ConfigError("topic names must not be empty")
        if not isinstance(entry, dict):
            raise ConfigError(f"topics.{name} must be a table")
        topics[name] = Topic(
            name=name,
            recipients=parse_recipients(entry.get("recipients"), name),
            allow_list=parse_allow_list(entry.get("allow_list"), name),
        )
    return TopicRegistry(topics)


def read_config_file(path: str | Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"config file {path} is invalid TOML: {exc}") from exc


@dataclass(frozen=True)
class AppConfig:
    port: int
    secret: str
    topics: TopicRegistry
    api_base_url: str = TELEGRAM_API_BASE_URL
    delivery_timeout_s: float = DEFAULT_TIMEOUT_S
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    reveal_forbidden: bool = False
    distinct_timeout_status: bool = False


def build_config(data: Mapping[str, Any], env: Mapping[str, str]) -> AppConfig:
    # Environment variables win over file values.
    def pick(env_key: str, file_key: str) -> Any:
        value = env.get(env_key)
        if value is not None and str(value).strip():
            return value
        return data.get(file_key)

    config = AppConfig(
        port=parse_positive_int(pick("PORT", "port"), DEFAULT_PORT),
        secret=str(pick("TG_BOT_TOKEN", "secret") or "").strip(),
        topics=parse_topics(data.get("topics")),
        api_base_url=str(pick("TELEGRAM_API_BASE_URL", "api_base_url") or TELEGRAM_API_BASE_URL).strip(),
        delivery_timeout_s=parse_positive_float(
            pick("DELIVERY_TIMEOUT_S", "delivery_timeout_s"), DEFAULT_TIMEOUT_S
        ),
        max_body_bytes=parse_positive_int(
            pick("MAX_BODY_BYTES", "max_body_bytes"), DEFAULT_MAX_BODY_BYTES
        ),
        reveal_forbidden=is_truthy(pick("REVEAL_FORBIDDEN", "reveal_forbidden")),
        distinct_timeout_status=is_truthy(
            pick("DISTINCT_TIMEOUT_STATUS", "distinct_timeout_status")
        ),
    )

    if not config.secret:
        raise ConfigError("secret (or TG_BOT_TOKEN) is required")

    return config


def load_config(path: str | Path | None, env: Mapping[str, str]) -> AppConfig:
    config_path = path or env.get(CONFIG_PATH_ENV)
    if not config_path:
        raise ConfigError(f"config file path is required (argument or {CONFIG_PATH_ENV})")
    return build_config(read_config_file(config_path), env)
