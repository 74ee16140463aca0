import copy
import dataclasses
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigError

logger = logging.getLogger("stickerbot.core.config")

CONFIG_FILENAME = "stickerbot.yml"
MEGABYTE = 1024 * 1024

DEFAULT_CONFIG: Dict[str, Any] = {
    "whatsapp": {
        "auth_path": "auth_info_baileys",
        "reconnect_delay_seconds": 10,
        "sync_full_history": False,
        "mark_online_on_connect": False,
        "connect_timeout_seconds": 60,
    },
    "media": {
        "max_file_size": 10 * MEGABYTE,
        "sticker_size": 512,
        "sticker_quality": 90,
        "sticker_effort": 4,
        "supported_formats": [
            "image/jpeg",
            "image/png",
            "image/webp",
            "video/mp4",
        ],
    },
    "retry": {
        "clip_max_attempts": 3,
        "sticker_max_attempts": 1,
        "backoff_base_ms": 1000,
    },
    "server": {
        "enabled": True,
        "host": "0.0.0.0",
        "port": 3000,
        "access_log": False,
    },
    "log": {
        "level": "INFO",
        "path": None,
        "max_bytes": 10 * MEGABYTE,
        "backup_count": 3,
    },
}

ENV_OVERRIDES = {
    "STICKERBOT_AUTH_PATH": ("whatsapp", "auth_path"),
    "STICKERBOT_LOG_LEVEL": ("log", "level"),
    "STICKERBOT_HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "STICKERBOT_PORT": ("server", "port"),
}


@dataclasses.dataclass(frozen=True)
class LogConfig:
    level: str
    path: Optional[Path]
    max_bytes: int
    backup_count: int


@dataclasses.dataclass(frozen=True)
class WhatsAppConfig:
    auth_path: Path
    reconnect_delay_seconds: float
    sync_full_history: bool
    mark_online_on_connect: bool
    connect_timeout_seconds: float


@dataclasses.dataclass(frozen=True)
class MediaConfig:
    max_file_size: int
    sticker_size: int
    sticker_quality: int
    sticker_effort: int
    supported_formats: tuple[str, ...]


@dataclasses.dataclass(frozen=True)
class RetryConfig:
    clip_max_attempts: int
    sticker_max_attempts: int
    backoff_base_ms: int


@dataclasses.dataclass(frozen=True)
class ServerConfig:
    enabled: bool
    host: str
    port: int
    access_log: bool


@dataclasses.dataclass(frozen=True)
class BotConfig:
    root: Path
    whatsapp: WhatsAppConfig
    media: MediaConfig
    retry: RetryConfig
    server: ServerConfig
    log: LogConfig
    raw: Dict[str, Any] = dataclasses.field(default_factory=dict)


def _merge_defaults(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def _load_dotenv_for_root(root: Path) -> None:
    candidate = root / ".env"
    try:
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def _apply_env_overrides(cfg: Dict[str, Any], env: Mapping[str, str]) -> list[str]:
    applied: list[str] = []
    for env_key, (section, key) in ENV_OVERRIDES.items():
        value = env.get(env_key)
        if value is None or not value.strip():
            continue
        cfg.setdefault(section, {})[key] = value.strip()
        applied.append(env_key)
    return applied


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = cfg.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{name} must be a mapping")
    return value


def _parse_int(value: Any, *, key: str, minimum: int = 1) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer") from exc
    if parsed < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return parsed


def _parse_float(value: Any, *, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number") from exc
    if parsed < 0:
        raise ConfigError(f"{key} must be >= 0")
    return parsed


def _parse_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{key} must be a boolean")


def parse_config(
    raw: Mapping[str, Any],
    *,
    root: Path,
    env: Optional[Mapping[str, str]] = None,
) -> BotConfig:
    """Build a validated `BotConfig` from a raw mapping merged over defaults."""

    cfg = _merge_defaults(DEFAULT_CONFIG, raw)
    applied = _apply_env_overrides(cfg, env if env is not None else os.environ)
    if applied:
        logger.info("Environment overrides active: %s", ", ".join(applied))

    wa = _section(cfg, "whatsapp")
    auth_path_value = wa.get("auth_path")
    if not isinstance(auth_path_value, str) or not auth_path_value.strip():
        raise ConfigError("whatsapp.auth_path must be a non-empty string path")
    auth_path = Path(auth_path_value).expanduser()
    if not auth_path.is_absolute():
        auth_path = root / auth_path
    whatsapp = WhatsAppConfig(
        auth_path=auth_path,
        reconnect_delay_seconds=_parse_float(
            wa.get("reconnect_delay_seconds"), key="whatsapp.reconnect_delay_seconds"
        ),
        sync_full_history=_parse_bool(
            wa.get("sync_full_history"), key="whatsapp.sync_full_history"
        ),
        mark_online_on_connect=_parse_bool(
            wa.get("mark_online_on_connect"), key="whatsapp.mark_online_on_connect"
        ),
        connect_timeout_seconds=_parse_float(
            wa.get("connect_timeout_seconds"), key="whatsapp.connect_timeout_seconds"
        ),
    )

    media_cfg = _section(cfg, "media")
    quality = _parse_int(media_cfg.get("sticker_quality"), key="media.sticker_quality")
    if quality > 100:
        raise ConfigError("media.sticker_quality must be <= 100")
    effort = _parse_int(
        media_cfg.get("sticker_effort"), key="media.sticker_effort", minimum=0
    )
    if effort > 6:
        raise ConfigError("media.sticker_effort must be <= 6")
    formats = media_cfg.get("supported_formats") or []
    if isinstance(formats, str) or not isinstance(formats, (list, tuple)):
        raise ConfigError("media.supported_formats must be a list")
    media = MediaConfig(
        max_file_size=_parse_int(media_cfg.get("max_file_size"), key="media.max_file_size"),
        sticker_size=_parse_int(media_cfg.get("sticker_size"), key="media.sticker_size"),
        sticker_quality=quality,
        sticker_effort=effort,
        supported_formats=tuple(str(item).strip().lower() for item in formats if item),
    )

    retry_cfg = _section(cfg, "retry")
    retry = RetryConfig(
        clip_max_attempts=_parse_int(
            retry_cfg.get("clip_max_attempts"), key="retry.clip_max_attempts"
        ),
        sticker_max_attempts=_parse_int(
            retry_cfg.get("sticker_max_attempts"), key="retry.sticker_max_attempts"
        ),
        backoff_base_ms=_parse_int(
            retry_cfg.get("backoff_base_ms"), key="retry.backoff_base_ms", minimum=0
        ),
    )

    server_cfg = _section(cfg, "server")
    server = ServerConfig(
        enabled=_parse_bool(server_cfg.get("enabled"), key="server.enabled"),
        host=str(server_cfg.get("host") or "0.0.0.0"),
        port=_parse_int(server_cfg.get("port"), key="server.port"),
        access_log=_parse_bool(server_cfg.get("access_log"), key="server.access_log"),
    )

    log_cfg = _section(cfg, "log")
    level = str(log_cfg.get("level") or "INFO").strip().upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"log.level must be a logging level name, got {level!r}")
    log_path_value = log_cfg.get("path")
    log_path: Optional[Path] = None
    if log_path_value:
        log_path = Path(str(log_path_value)).expanduser()
        if not log_path.is_absolute():
            log_path = root / log_path
    log = LogConfig(
        level=level,
        path=log_path,
        max_bytes=_parse_int(log_cfg.get("max_bytes"), key="log.max_bytes"),
        backup_count=_parse_int(
            log_cfg.get("backup_count"), key="log.backup_count", minimum=0
        ),
    )

    return BotConfig(
        root=root,
        whatsapp=whatsapp,
        media=media,
        retry=retry,
        server=server,
        log=log,
        raw=cfg,
    )


def load_config(
    path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> BotConfig:
    """Load `stickerbot.yml` (or `path`), the adjacent `.env`, and env overrides."""

    if path is not None:
        config_path = Path(path).expanduser().resolve()
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        root = config_path.parent
    else:
        root = Path.cwd().resolve()
        config_path = root / CONFIG_FILENAME
    _load_dotenv_for_root(root)
    raw = _load_yaml_dict(config_path)
    return parse_config(raw, root=root, env=env)
