from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    host: str
    port: int


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    tmp_dir: str
    md_dir: str
    state_db: str


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    api_base: str
    target_chat_id: int
    webhook_secret: str
    timeout_seconds: int
    max_message_chars: int


@dataclass(frozen=True)
class DownloadConfig:
    ytdlp_path: str
    format: str
    merge_output_format: str
    socket_timeout_seconds: int
    fetch_metadata: bool


@dataclass(frozen=True)
class AnalysisConfig:
    api_keys: list[str]
    models: list[str]
    prompt: str
    base_url: str
    timeout_seconds: int
    mime_type: str
    max_context_description: int


@dataclass(frozen=True)
class StatusConfig:
    heartbeat_seconds: float
    source_description_limit: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    telegram: TelegramConfig
    download: DownloadConfig
    analysis: AnalysisConfig
    status: StatusConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "vidlens",
        "host": "0.0.0.0",
        "port": 3000,
    },
    "paths": {
        "data_dir": "data",
        "tmp_dir": "tmp",
        "md_dir": "data/md",
        "state_db": "data/bot.db",
    },
    "telegram": {
        "bot_token": "",
        "api_base": "https://api.telegram.org",
        "target_chat_id": 0,
        "webhook_secret": "",
        "timeout_seconds": 30,
        "max_message_chars": 4096,
    },
    "download": {
        "ytdlp_path": "",
        "format": "bv*+ba/b",
        "merge_output_format": "mp4",
        "socket_timeout_seconds": 30,
        "fetch_metadata": True,
    },
    "analysis": {
        "api_keys": [],
        "models": ["gemini-2.5-flash"],
        "prompt": "Analyze this video and provide a summary.",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "timeout_seconds": 300,
        "mime_type": "video/mp4",
        "max_context_description": 4000,
    },
    "status": {
        "heartbeat_seconds": 10.0,
        "source_description_limit": 600,
    },
}

CONFIG_PATH_ENV = "VL_CONFIG"


def load_config(path: str | None = None) -> Config:
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or os.environ.get(CONFIG_PATH_ENV) or None
    if path:
        _deep_merge(cfg, _load_yaml(path))
    _apply_env_overrides(cfg)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    return errors


def _load_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file is not valid YAML: {path}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping")
    return data


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    data_dir = os.environ.get("VL_DATA_DIR")
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["tmp_dir"] = os.path.join(data_dir, "tmp")
        cfg["paths"]["md_dir"] = os.path.join(data_dir, "md")
        cfg["paths"]["state_db"] = os.path.join(data_dir, "bot.db")

    token = os.environ.get("TELEGRAM_BOT_TOKEN")
    if token:
        cfg["telegram"]["bot_token"] = token.strip()
    chat_id = os.environ.get("TARGET_CHAT_ID")
    if chat_id:
        cfg["telegram"]["target_chat_id"] = _parse_int("TARGET_CHAT_ID", chat_id)
    secret = os.environ.get("VL_WEBHOOK_SECRET")
    if secret:
        cfg["telegram"]["webhook_secret"] = secret

    keys = os.environ.get("GEMINI_API_KEY")
    if keys:
        cfg["analysis"]["api_keys"] = _split_csv(keys)
    models = os.environ.get("GEMINI_MODELS")
    if models:
        cfg["analysis"]["models"] = _split_csv(models)
    prompt = os.environ.get("GEMINI_PROMPT")
    if prompt:
        cfg["analysis"]["prompt"] = prompt

    ytdlp_path = os.environ.get("YTDLP_PATH")
    if ytdlp_path:
        cfg["download"]["ytdlp_path"] = ytdlp_path
    port = os.environ.get("PORT")
    if port:
        cfg["app"]["port"] = _parse_int("PORT", port)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        elif value <= 0:
            errors.append(f"{path} must be positive")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    telegram_cfg = cfg["telegram"]
    download_cfg = cfg["download"]
    analysis_cfg = cfg["analysis"]
    status_cfg = cfg["status"]

    if not analysis_cfg["models"]:
        raise ConfigError("analysis.models must list at least one model")

    return Config(
        app=AppConfig(
            name=str(app_cfg["name"]),
            host=str(app_cfg["host"]),
            port=int(app_cfg["port"]),
        ),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            tmp_dir=str(paths_cfg["tmp_dir"]),
            md_dir=str(paths_cfg["md_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        telegram=TelegramConfig(
            bot_token=str(telegram_cfg["bot_token"]),
            api_base=str(telegram_cfg["api_base"]).rstrip("/"),
            target_chat_id=int(telegram_cfg["target_chat_id"]),
            webhook_secret=str(telegram_cfg["webhook_secret"]),
            timeout_seconds=int(telegram_cfg["timeout_seconds"]),
            max_message_chars=int(telegram_cfg["max_message_chars"]),
        ),
        download=DownloadConfig(
            ytdlp_path=str(download_cfg["ytdlp_path"]),
            format=str(download_cfg["format"]),
            merge_output_format=str(download_cfg["merge_output_format"]),
            socket_timeout_seconds=int(download_cfg["socket_timeout_seconds"]),
            fetch_metadata=bool(download_cfg["fetch_metadata"]),
        ),
        analysis=AnalysisConfig(
            api_keys=list(dict.fromkeys(analysis_cfg["api_keys"])),
            models=list(analysis_cfg["models"]),
            prompt=str(analysis_cfg["prompt"]),
            base_url=str(analysis_cfg["base_url"]).rstrip("/"),
            timeout_seconds=int(analysis_cfg["timeout_seconds"]),
            mime_type=str(analysis_cfg["mime_type"]),
            max_context_description=int(analysis_cfg["max_context_description"]),
        ),
        status=StatusConfig(
            heartbeat_seconds=float(status_cfg["heartbeat_seconds"]),
            source_description_limit=int(status_cfg["source_description_limit"]),
        ),
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
