from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_PORTAL_BASE_URL = "https://econet.bancoecofuturo.com.bo:447/EconetWeb"


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_first(*names: str, default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so a deployment only needs `.env`; YAML stays an optional override.

    Legacy variable names from the first deployment (ECONET_URL, INDEX_PAGE, 2FACODE, ...) are still honored.
    """
    return {
        "portal": {
            "base_url": _env_first("PORTAL_BASE_URL", "ECONET_URL", default=DEFAULT_PORTAL_BASE_URL),
            "index_url": _env_first("PORTAL_INDEX_URL", "INDEX_PAGE"),
            "generate_qr_url": _env_first("PORTAL_GENERATE_QR_URL", "GENERATE_QR_PAGE"),
            "username": _env_first("PORTAL_USERNAME", "ECONET_USER"),
            "password": _env_first("PORTAL_PASSWORD", "ECONET_PASS"),
            "executable_path": os.getenv("CHROME_EXECUTABLE_PATH", ""),
            "headless": _env_bool("PORTAL_HEADLESS", default=True),
            "default_timeout_ms": int(os.getenv("PORTAL_DEFAULT_TIMEOUT_MS", "45000")),
            "step_up_wait_ms": int(os.getenv("PORTAL_STEP_UP_WAIT_MS", "2000")),
            "memo_prefix": os.getenv("PORTAL_MEMO_PREFIX", "BM QR"),
        },
        "step_up": {
            "initial_code": _env_first("STEP_UP_CODE", "2FACODE"),
        },
        "notifier": {
            "base_url": _env_first("NOTIFIER_BASE_URL", "OPTUSBMS_BACKEND_URL"),
            "timeout_seconds": float(os.getenv("NOTIFIER_TIMEOUT_SECONDS", "10")),
        },
        "queue": {
            "dedup_window_hours": float(os.getenv("QUEUE_DEDUP_WINDOW_HOURS", "24")),
        },
        "storage": {
            "qr_output_dir": _env_first("QR_OUTPUT_DIR", default="data/qr"),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/automation.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Banking portal endpoints and credentials.

    `index_url` and `generate_qr_url` default to the standard paths under `base_url`; set them explicitly
    only if the bank moves a page.
    """

    base_url: str = DEFAULT_PORTAL_BASE_URL
    index_url: str = ""
    generate_qr_url: str = ""
    username: str = ""
    password: str = Field(default="", repr=False)
    executable_path: str = ""
    headless: bool = True
    default_timeout_ms: int = 45_000
    step_up_wait_ms: int = 2_000
    # The bank prefixes incoming QR transfers with this marker in the movement memo. Empty disables the check.
    memo_prefix: str = "BM QR"

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "PortalConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("portal.base_url must be a full URL like 'https://bank.example/EconetWeb'")

        self.base_url = base_url
        self.index_url = (self.index_url or "").strip() or f"{base_url}/Inicio/Index"
        self.generate_qr_url = (self.generate_qr_url or "").strip() or f"{base_url}/Transferencia/QRGenerar"

        if self.default_timeout_ms <= 0:
            raise ValueError("portal.default_timeout_ms must be positive")
        if self.step_up_wait_ms < 0:
            raise ValueError("portal.step_up_wait_ms must not be negative")
        return self

    def require_credentials(self) -> None:
        if not self.username:
            raise ValueError("portal.username is not configured (PORTAL_USERNAME / ECONET_USER)")
        if not self.password:
            raise ValueError("portal.password is not configured (PORTAL_PASSWORD / ECONET_PASS)")


class StepUpConfig(BaseModel):
    initial_code: str = Field(default="", repr=False)


class NotifierConfig(BaseModel):
    base_url: str = ""
    timeout_seconds: float = 10.0


class QueueConfig(BaseModel):
    dedup_window_hours: float = 24.0

    @model_validator(mode="after")
    def _validate_window(self) -> "QueueConfig":
        if self.dedup_window_hours <= 0:
            raise ValueError("queue.dedup_window_hours must be positive")
        return self


class StorageConfig(BaseModel):
    qr_output_dir: str = "data/qr"
    debug_dir: str = "data/debug"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/automation.log"


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    step_up: StepUpConfig = StepUpConfig()
    notifier: NotifierConfig = NotifierConfig()
    queue: QueueConfig = QueueConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
