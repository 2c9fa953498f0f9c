"""Oracle configuration, populated from ``ORACLE_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .audit import DEFAULT_AUDIT_PATH
from .errors import ConfigError, MalformedEventError
from .events import normalize_address
from .local_ledger import DEFAULT_LEDGER_PATH
from .state import ClaimPolicy
from .units import parse_duration


@dataclass
class OracleConfig:
    """Runtime settings for the engine, runner and adapters."""

    rpc_url: Optional[str] = None
    module_address: Optional[str] = None
    private_key: Optional[str] = None
    chain_id: Optional[int] = None
    rpc_timeout: float = 30.0
    gas_limit: int = 500_000
    wait_for_receipt: bool = True
    receipt_timeout: float = 120.0

    poll_interval: float = 10.0
    sweep_interval: float = 300.0
    blocks_to_look_back: int = 7200
    max_workers: int = 4

    allowance_threshold: int = 0
    claim_policy: ClaimPolicy = ClaimPolicy.DEPOSIT_MATCH
    max_valuation_age: Optional[int] = None
    default_window: int = 86_400

    audit_path: Path = field(default_factory=lambda: DEFAULT_AUDIT_PATH)
    ledger_path: Path = field(default_factory=lambda: DEFAULT_LEDGER_PATH)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "OracleConfig":
        env = os.environ if env is None else env

        def get(name: str) -> Optional[str]:
            value = env.get(f"ORACLE_{name}")
            return value.strip() if value and value.strip() else None

        def get_int(name: str, default: Optional[int]) -> Optional[int]:
            raw = get(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"ORACLE_{name} must be an integer, got {raw!r}") from None

        def get_float(name: str, default: float) -> float:
            raw = get(name)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError:
                raise ConfigError(f"ORACLE_{name} must be a number, got {raw!r}") from None

        def get_duration(name: str, default: Optional[int]) -> Optional[int]:
            raw = get(name)
            if raw is None:
                return default
            try:
                return parse_duration(raw)
            except ValueError as exc:
                raise ConfigError(f"ORACLE_{name}: {exc}") from None

        def get_bool(name: str, default: bool) -> bool:
            raw = get(name)
            if raw is None:
                return default
            if raw.lower() in ("1", "true", "yes", "on"):
                return True
            if raw.lower() in ("0", "false", "no", "off"):
                return False
            raise ConfigError(f"ORACLE_{name} must be true or false, got {raw!r}")

        claim_raw = get("CLAIM_POLICY")
        try:
            claim_policy = ClaimPolicy(claim_raw) if claim_raw else ClaimPolicy.DEPOSIT_MATCH
        except ValueError:
            choices = ", ".join(p.value for p in ClaimPolicy)
            raise ConfigError(f"ORACLE_CLAIM_POLICY must be one of {choices}, got {claim_raw!r}") from None

        defaults = cls()
        audit_path = get("AUDIT_PATH")
        ledger_path = get("LEDGER_PATH")
        return cls(
            rpc_url=get("RPC_URL"),
            module_address=get("MODULE_ADDRESS"),
            private_key=get("PRIVATE_KEY"),
            chain_id=get_int("CHAIN_ID", None),
            rpc_timeout=get_float("RPC_TIMEOUT", defaults.rpc_timeout),
            gas_limit=get_int("GAS_LIMIT", defaults.gas_limit),
            wait_for_receipt=get_bool("WAIT_FOR_RECEIPT", defaults.wait_for_receipt),
            receipt_timeout=get_float("RECEIPT_TIMEOUT", defaults.receipt_timeout),
            poll_interval=get_float("POLL_INTERVAL", defaults.poll_interval),
            sweep_interval=get_float("SWEEP_INTERVAL", defaults.sweep_interval),
            blocks_to_look_back=get_int("BLOCKS_TO_LOOK_BACK", defaults.blocks_to_look_back),
            max_workers=get_int("MAX_WORKERS", defaults.max_workers),
            allowance_threshold=get_int("ALLOWANCE_THRESHOLD", defaults.allowance_threshold),
            claim_policy=claim_policy,
            max_valuation_age=get_duration("MAX_VALUATION_AGE", None),
            default_window=get_duration("DEFAULT_WINDOW", defaults.default_window),
            audit_path=Path(audit_path).expanduser() if audit_path else DEFAULT_AUDIT_PATH,
            ledger_path=Path(ledger_path).expanduser() if ledger_path else DEFAULT_LEDGER_PATH,
        )

    def validate(self, rpc: bool = False) -> "OracleConfig":
        """Raise ConfigError on invalid settings. Returns self for chaining."""
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if self.sweep_interval <= 0:
            raise ConfigError("sweep_interval must be positive")
        if self.blocks_to_look_back <= 0:
            raise ConfigError("blocks_to_look_back must be positive")
        if self.receipt_timeout <= 0:
            raise ConfigError("receipt_timeout must be positive")
        if self.max_workers <= 0:
            raise ConfigError("max_workers must be positive")
        if self.allowance_threshold < 0:
            raise ConfigError("allowance_threshold must be non-negative")
        if self.default_window < 0:
            raise ConfigError("default_window must be non-negative")
        if self.max_valuation_age is not None and self.max_valuation_age <= 0:
            raise ConfigError("max_valuation_age must be positive when set")
        if self.module_address:
            try:
                self.module_address = normalize_address(self.module_address)
            except MalformedEventError:
                raise ConfigError(f"Invalid module address: {self.module_address}") from None

        if rpc:
            if not self.rpc_url:
                raise ConfigError("ORACLE_RPC_URL is required")
            if not self.module_address:
                raise ConfigError("ORACLE_MODULE_ADDRESS is required")
            if not self.private_key:
                raise ConfigError("ORACLE_PRIVATE_KEY is required")
        return self
