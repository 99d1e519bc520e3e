"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from dotenv import load_dotenv

from bridgewatch.core.json_utils import dumps
from bridgewatch.errors import ConfigError

load_dotenv()

NETWORKS = ("Testnet", "Devnet")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Explorer API and bridged XRP token per destination network
NETWORK_DEFAULTS: Dict[str, Dict[str, str]] = {
    "Testnet": {
        "explorer_url": "https://explorer.testnet.xrplevm.org/api/v2",
        "token_address": "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE",
    },
    "Devnet": {
        "explorer_url": "https://explorer.xrplevm.org/api/v2",
        "token_address": "0xD4949664cD82660AaE99bEdc034a0deA8A0bd517",
    },
}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    network: str
    xrpl_url: str
    explorer_url: str
    token_address: Optional[str]
    source_poll_interval: float
    dest_poll_interval: float
    max_poll_attempts: int
    amount_tolerance: Decimal
    early_arrival_grace_ms: int
    http_timeout: float
    state_dir: str
    base_amount: Decimal
    amount_step: Decimal
    reject_ambiguous: bool
    log_level: str
    log_file: Optional[str]
    metrics_port: int

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @classmethod
    def load(cls) -> "Settings":
        """
        Build settings from the environment.

        Raises:
            ConfigError: missing endpoint or invalid value
        """
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as exc:
                raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError as exc:
                raise ConfigError(f"{key} must be a number, got {raw!r}") from exc

        def _decimal_env(key: str, default: str) -> Decimal:
            raw = os.getenv(key) or default
            try:
                return Decimal(raw)
            except InvalidOperation as exc:
                raise ConfigError(f"{key} must be a decimal, got {raw!r}") from exc

        network = os.getenv("BW_NETWORK", "Testnet")
        if network not in NETWORKS:
            raise ConfigError(f"BW_NETWORK must be one of {NETWORKS}, got {network!r}")
        defaults = NETWORK_DEFAULTS[network]

        cfg = cls(
            network=network,
            xrpl_url=os.getenv("BW_XRPL_URL", ""),
            explorer_url=os.getenv("BW_EXPLORER_URL", defaults["explorer_url"]),
            token_address=os.getenv("BW_TOKEN_ADDRESS", defaults["token_address"]) or None,
            source_poll_interval=_float_env("BW_SOURCE_POLL_SEC", 5.0),
            dest_poll_interval=_float_env("BW_DEST_POLL_SEC", 5.0),
            max_poll_attempts=_int_env("BW_MAX_POLL_ATTEMPTS", 300),
            amount_tolerance=_decimal_env("BW_AMOUNT_TOLERANCE", "1e-9"),
            early_arrival_grace_ms=_int_env("BW_EARLY_ARRIVAL_GRACE_MS", 0),
            http_timeout=_float_env("BW_HTTP_TIMEOUT", 10.0),
            state_dir=os.getenv("BW_STATE_DIR", "state"),
            base_amount=_decimal_env("BW_BASE_AMOUNT", "90"),
            amount_step=_decimal_env("BW_AMOUNT_STEP", "0.0001"),
            reject_ambiguous=env_bool("BW_REJECT_AMBIGUOUS", True),
            log_level=os.getenv("BW_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("BW_LOG_FILE", "bridgewatch.log") or None,
            metrics_port=_int_env("BW_METRICS_PORT", 0),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if not self.xrpl_url:
            raise ConfigError("BW_XRPL_URL is required")
        if not self.xrpl_url.startswith(("http://", "https://")):
            raise ConfigError(f"BW_XRPL_URL must be an http(s) JSON-RPC endpoint, got {self.xrpl_url!r}")
        if not self.explorer_url:
            raise ConfigError("BW_EXPLORER_URL is required")
        if self.source_poll_interval <= 0 or self.dest_poll_interval <= 0:
            raise ConfigError("Poll intervals must be > 0")
        if self.max_poll_attempts <= 0:
            raise ConfigError("BW_MAX_POLL_ATTEMPTS must be > 0")
        if self.amount_tolerance < 0:
            raise ConfigError("BW_AMOUNT_TOLERANCE must be >= 0")
        if self.early_arrival_grace_ms < 0:
            raise ConfigError("BW_EARLY_ARRIVAL_GRACE_MS must be >= 0")
        if self.http_timeout <= 0:
            raise ConfigError("BW_HTTP_TIMEOUT must be > 0")
        if self.base_amount <= 0 or self.amount_step <= 0:
            raise ConfigError("BW_BASE_AMOUNT and BW_AMOUNT_STEP must be > 0")
        if self.amount_step <= self.amount_tolerance:
            raise ConfigError("BW_AMOUNT_STEP must exceed BW_AMOUNT_TOLERANCE or tagged amounts collide")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"BW_LOG_LEVEL invalid: {self.log_level!r}")

        if self.early_arrival_grace_ms > 0:
            logging.getLogger("bridgewatch").warning(
                f"WARNING: BW_EARLY_ARRIVAL_GRACE_MS={self.early_arrival_grace_ms} accepts destination "
                "transfers stamped before source settlement; their bridging duration is recorded as 0."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    logger = logging.getLogger("bridgewatch")
    payload = {
        "event": "config_loaded",
        "network": cfg.network,
        "xrpl_url": cfg.xrpl_url,
        "explorer_url": cfg.explorer_url,
        "source_poll_interval": cfg.source_poll_interval,
        "dest_poll_interval": cfg.dest_poll_interval,
        "max_poll_attempts": cfg.max_poll_attempts,
        "state_dir": cfg.state_dir,
    }
    logger.info(dumps(payload))
