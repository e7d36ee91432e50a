# supplytrace/blockchain.py
"""
Ledger wiring for notarization.

Confirmed transfers and risk assessments are anchored on an EVM chain
through a single `recordEvent(eventType, payloadHash, fieldsJson)` contract
function. Services never touch Web3 directly; they depend on the
`LedgerClient` protocol so tests and hosts can plug in another client.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from web3 import Web3

from supplytrace.app_config import CoreConfig, load_config
from supplytrace.errors import ConfigurationError, LedgerUnavailableError

logger = logging.getLogger(__name__)


class LedgerClient(Protocol):
    def record_event(self, event_type: str, payload_hash: str, fields: Mapping[str, Any]) -> str:
        """Append one event and return its transaction reference."""
        ...


# -------------------------------------------------------------------
# Payload hashing
# -------------------------------------------------------------------
def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def canonical_json(fields: Mapping[str, Any]) -> str:
    return json.dumps(dict(fields), sort_keys=True, separators=(",", ":"), default=_json_default)


def payload_hash(fields: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON form of `fields`."""
    return hashlib.sha256(canonical_json(fields).encode("utf-8")).hexdigest()


# -------------------------------------------------------------------
# Key + tx helpers
# -------------------------------------------------------------------
def _normalize_pk(pk: str) -> str:
    pk = pk.strip().replace(" ", "").replace("\n", "").replace("\r", "")
    hexpart = pk[2:] if pk.lower().startswith("0x") else pk
    if len(hexpart) != 64:
        raise ConfigurationError(f"Private key must be 64 hex chars; got {len(hexpart)}")
    if not re.fullmatch(r"[0-9a-fA-F]{64}", hexpart):
        raise ConfigurationError("Private key contains non-hex characters")
    return "0x" + hexpart


def _raw_tx_bytes(signed) -> bytes:
    """
    Handle both eth-account styles:
      - signed.raw_transaction
      - signed.rawTransaction
    """
    raw = getattr(signed, "raw_transaction", None)
    if raw is None:
        raw = getattr(signed, "rawTransaction", None)
    if raw is None:
        raise TypeError("SignedTransaction has no raw tx bytes")
    return raw


def _load_abi(path: str) -> list:
    here = os.path.dirname(__file__)
    candidates = [
        path,
        os.path.join(os.getcwd(), path),
        os.path.join(here, "..", path),
    ]
    for p in candidates:
        p = os.path.abspath(p)
        if os.path.exists(p):
            with open(p, "r", encoding="utf-8") as f:
                return json.load(f)
    raise ConfigurationError(f"{path} not found. Set LEDGER_ABI_FILE to the contract ABI json.")


class Web3LedgerClient:
    """Notarization client backed by a deployed ledger contract."""

    def __init__(self, config: Optional[CoreConfig] = None, web3: Optional[Web3] = None):
        self.config = config or load_config()
        self._web3 = web3
        self._account = None
        self._contract = None

    # -------------------------------------------------
    # Wiring
    # -------------------------------------------------
    def _connect(self) -> None:
        if self._contract is not None:
            return

        cfg = self.config
        if not cfg.ledger_contract_address:
            raise ConfigurationError("LEDGER_CONTRACT_ADDRESS not configured")
        if not cfg.ledger_private_key:
            raise ConfigurationError("LEDGER_PRIVATE_KEY not configured")

        if self._web3 is None:
            self._web3 = Web3(
                Web3.HTTPProvider(
                    cfg.ledger_rpc_url,
                    request_kwargs={"timeout": cfg.ledger_timeout_seconds},
                )
            )

        self._account = self._web3.eth.account.from_key(_normalize_pk(cfg.ledger_private_key))
        self._contract = self._web3.eth.contract(
            address=Web3.to_checksum_address(cfg.ledger_contract_address),
            abi=_load_abi(cfg.ledger_abi_file),
        )
        logger.info(
            "Ledger wired: account=%s contract=%s chain=%s",
            self._account.address,
            cfg.ledger_contract_address,
            cfg.ledger_chain_id,
        )

    def suggest_fees(self, multiplier: float = 1.25, min_prio_gwei: int = 25) -> Tuple[int, int]:
        """Return (priority_tip_wei, max_fee_wei) using fee_history."""
        w3 = self._web3
        hist = w3.eth.fee_history(5, "latest", [10, 50, 90])
        base = hist.get("baseFeePerGas", [0])[-1] or w3.to_wei(30, "gwei")
        tips = [r[-1] for r in hist.get("reward", []) if r]
        prio = max(tips) if tips else w3.to_wei(min_prio_gwei, "gwei")
        max_fee = int(base * multiplier + prio)
        return prio, max_fee

    # -------------------------------------------------
    # LedgerClient
    # -------------------------------------------------
    def record_event(self, event_type: str, payload_hash: str, fields: Mapping[str, Any]) -> str:
        try:
            self._connect()
            w3 = self._web3
            fn = self._contract.functions.recordEvent(
                event_type,
                bytes.fromhex(payload_hash),
                canonical_json(fields),
            )

            gas_est = fn.estimate_gas({"from": self._account.address})
            prio, max_fee = self.suggest_fees()

            tx = fn.build_transaction(
                {
                    "from": self._account.address,
                    "nonce": w3.eth.get_transaction_count(self._account.address, "pending"),
                    "chainId": self.config.ledger_chain_id,
                    "gas": int(gas_est * 1.20),
                    "maxPriorityFeePerGas": prio,
                    "maxFeePerGas": max_fee,
                }
            )

            signed = self._account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(_raw_tx_bytes(signed))
            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.ledger_timeout_seconds
            )
        except Exception as e:
            raise LedgerUnavailableError(f"Ledger write failed for {event_type}: {e}") from e

        if not receipt or receipt.status != 1:
            raise LedgerUnavailableError(f"Ledger transaction reverted for {event_type}")

        return w3.to_hex(tx_hash)


def ledger_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Drop empty values so hashes do not depend on optional-field noise."""
    return {k: v for k, v in fields.items() if v is not None}


__all__ = [
    "LedgerClient",
    "Web3LedgerClient",
    "canonical_json",
    "payload_hash",
    "ledger_fields",
]
