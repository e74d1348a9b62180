import os
import tomllib
from pathlib import Path
from typing import Any

from fundbridge.errors import ConfigError

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

# env var -> (table, key)
ENV_OVERRIDES = {
    "FUNDBRIDGE_REQUEST_URL": ("request_service", "base_url"),
    "FUNDBRIDGE_APP_ID": ("request_service", "app_id"),
    "FUNDBRIDGE_CHAIN_URL": ("chain", "base_url"),
    "FUNDBRIDGE_SUBMITTER": ("submitter", "mode"),
    "FUNDBRIDGE_JOURNAL": ("journal", "path"),
}

SUBMITTER_MODES = {"local", "delegated"}


def deep_update(base: dict, override: dict) -> dict:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_update(base[k], v)
        else:
            base[k] = v
    return base


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        return tomllib.loads(path.read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def _validate(cfg: dict[str, Any]) -> None:
    mode = cfg["submitter"]["mode"]
    if mode not in SUBMITTER_MODES:
        raise ConfigError(f"submitter.mode must be one of {sorted(SUBMITTER_MODES)}, got {mode!r}")
    if mode == "delegated" and not cfg["submitter"].get("command"):
        raise ConfigError("submitter.command is required for delegated mode")
    for key in ("account_interval", "funds_interval", "status_interval"):
        if cfg["engine"][key] <= 0:
            raise ConfigError(f"engine.{key} must be positive")
    if not cfg["request_service"].get("app_id"):
        raise ConfigError("request_service.app_id is required")


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> dict[str, Any]:
    """Load the packaged defaults, merge ``path`` over them, then apply env overrides.

    Raises:
        ConfigError: if the file can't be read or a value is invalid.
    """
    cfg = _read_toml(config_file)
    if path is not None:
        deep_update(cfg, _read_toml(Path(path)))

    env = os.environ if env is None else env
    for var, (table, key) in ENV_OVERRIDES.items():
        if var in env:
            cfg[table][key] = env[var]

    for table in ("request_service", "chain"):
        cfg[table]["base_url"] = cfg[table]["base_url"].rstrip("/")

    _validate(cfg)
    return cfg
