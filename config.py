import json
import os
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel

ENV_PREFIX = "DEXBOOST_"
DEFAULT_CONFIG_FILE = "config.json"

# comma separated in the environment
LIST_FIELDS = {
    "chains_to_track",
    "allowed_address_suffixes",
    "denied_address_suffixes",
    "cors_origins",
}
# JSON encoded in the environment
JSON_FIELDS = {"pin_pricing"}


class ConfigError(Exception):
    pass


class Settings(BaseModel):
    database_url: str = "sqlite:///./database.db"

    boosts_url: str = "https://api.dexscreener.com/token-boosts/latest/v1"
    token_url: str = "https://api.dexscreener.com/latest/dex/tokens/"
    rugcheck_url: str = "https://api.rugcheck.xyz/v1/tokens/"
    rug_check_enabled: bool = True
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    request_timeout: float = 10.0

    hunter_interval: float = 5.0
    payment_poll_interval: float = 10.0
    purge_interval: float = 3600.0
    retention_hours: float = 24.0
    run_background_tasks: bool = True

    chains_to_track: List[str] = ["solana"]
    dex_to_track: str = "raydium"
    min_boost_amount: int = 10
    golden_boost_amount: int = 500
    allowed_address_suffixes: List[str] = []
    denied_address_suffixes: List[str] = []

    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "https://dexboost.xyz",
    ]

    payment_tolerance: float = 0.001
    order_window_minutes: int = 30
    max_pinned_tokens: int = 3
    pin_pricing: Dict[int, float] = {1: 0.5, 3: 1.2, 6: 2.0, 12: 3.5, 24: 6.0}

    token_sort_key: str = "boosted"
    log_level: str = "INFO"

    def price_for(self, hours: int) -> Optional[float]:
        return self.pin_pricing.get(hours)


def _read_config_file(path: str) -> dict:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def _read_environment(environ: Mapping[str, str]) -> dict:
    values = {}
    for name in Settings.model_fields:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue

        if name in LIST_FIELDS:
            values[name] = [item.strip() for item in raw.split(",") if item.strip()]
        elif name in JSON_FIELDS:
            try:
                values[name] = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigError(f"{ENV_PREFIX + name.upper()} is not valid JSON: {e}") from e
        else:
            values[name] = raw
    return values


def load_settings(config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Defaults, then the JSON config file, then DEXBOOST_* environment variables."""
    if environ is None:
        environ = os.environ

    if config_path is None:
        config_path = environ.get(ENV_PREFIX + "CONFIG")
        if config_path is None and os.path.exists(DEFAULT_CONFIG_FILE):
            config_path = DEFAULT_CONFIG_FILE

    values = {}
    if config_path is not None:
        if not os.path.exists(config_path):
            raise ConfigError(f"Config file {config_path} does not exist")
        values.update(_read_config_file(config_path))
    values.update(_read_environment(environ))

    try:
        return Settings(**values)
    except ValueError as e:
        raise ConfigError(str(e)) from e
