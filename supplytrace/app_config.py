# supplytrace/app_config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from supplytrace.errors import ConfigurationError


@dataclass(frozen=True)
class CoreConfig:
    # Mongo
    mongo_uri: str = "mongodb://localhost:27017/supply_trace_db"
    mongo_db_name: str = "supply_trace_db"
    disable_mongo: bool = False

    # Ledger (EVM chain used as the notarization log)
    ledger_rpc_url: str = "https://rpc-amoy.polygon.technology"
    ledger_contract_address: Optional[str] = None
    ledger_abi_file: str = "SupplyTraceLedgerABI.json"
    ledger_private_key: Optional[str] = None
    ledger_chain_id: int = 80002
    ledger_timeout_seconds: float = 10.0

    # Notarization retry
    notarize_max_attempts: int = 5
    notarize_backoff_seconds: float = 2.0
    notarize_max_backoff_seconds: float = 300.0

    # Risk engine
    risk_alert_window_days: int = 365
    reference_data_ttl_seconds: float = 3600.0

    log_level: str = "INFO"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def load_config() -> CoreConfig:
    """
    Load all core configuration from the environment in one place.
    """
    defaults = CoreConfig()

    # ------------------------------
    # Mongo
    # ------------------------------
    mongo_uri = os.getenv("MONGO_URI", defaults.mongo_uri)
    mongo_db_name = os.getenv("MONGO_DB_NAME", defaults.mongo_db_name)
    disable_mongo = os.getenv("DISABLE_MONGO", "0") == "1"

    # ------------------------------
    # Ledger Settings
    # ------------------------------
    ledger_rpc_url = os.getenv("LEDGER_RPC_URL", defaults.ledger_rpc_url)
    ledger_contract_address = os.getenv("LEDGER_CONTRACT_ADDRESS") or None
    ledger_abi_file = os.getenv("LEDGER_ABI_FILE", defaults.ledger_abi_file)
    ledger_private_key = os.getenv("LEDGER_PRIVATE_KEY") or None
    ledger_chain_id = _int("LEDGER_CHAIN_ID", defaults.ledger_chain_id)
    ledger_timeout = _float("LEDGER_TIMEOUT_SECONDS", defaults.ledger_timeout_seconds)

    # ------------------------------
    # Notarization retry
    # ------------------------------
    max_attempts = _int("NOTARIZE_MAX_ATTEMPTS", defaults.notarize_max_attempts)
    if max_attempts < 1:
        raise ConfigurationError("NOTARIZE_MAX_ATTEMPTS must be >= 1")
    backoff = _float("NOTARIZE_BACKOFF_SECONDS", defaults.notarize_backoff_seconds)
    if backoff < 0:
        raise ConfigurationError("NOTARIZE_BACKOFF_SECONDS must be >= 0")
    max_backoff = _float("NOTARIZE_MAX_BACKOFF_SECONDS", defaults.notarize_max_backoff_seconds)
    if max_backoff < backoff:
        raise ConfigurationError("NOTARIZE_MAX_BACKOFF_SECONDS must be >= NOTARIZE_BACKOFF_SECONDS")

    # ------------------------------
    # Risk engine
    # ------------------------------
    window_days = _int("RISK_ALERT_WINDOW_DAYS", defaults.risk_alert_window_days)
    if window_days <= 0:
        raise ConfigurationError("RISK_ALERT_WINDOW_DAYS must be positive")

    return CoreConfig(
        mongo_uri=mongo_uri,
        mongo_db_name=mongo_db_name,
        disable_mongo=disable_mongo,
        ledger_rpc_url=ledger_rpc_url,
        ledger_contract_address=ledger_contract_address,
        ledger_abi_file=ledger_abi_file,
        ledger_private_key=ledger_private_key,
        ledger_chain_id=ledger_chain_id,
        ledger_timeout_seconds=ledger_timeout,
        notarize_max_attempts=max_attempts,
        notarize_backoff_seconds=backoff,
        notarize_max_backoff_seconds=max_backoff,
        risk_alert_window_days=window_days,
        reference_data_ttl_seconds=_float(
            "REFERENCE_DATA_TTL_SECONDS", defaults.reference_data_ttl_seconds
        ),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Basic handler for hosts that do not configure logging themselves."""
    logging.basicConfig(
        level=(level or load_config().log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
