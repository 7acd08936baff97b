"""
The persisted bootstrap record (`banks-config.json`).

One `BankConfigStore` per process owns loading, caching and writing the record;
callers never parse the file themselves. A missing file (or a 404 from the
configured URL) means the protocol has not been bootstrapped yet.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import requests
from solders.pubkey import Pubkey

from .errors import ConfigNotLoadedError, TransportError
from .tx_builder import normalize_token, to_pubkey

logger = logging.getLogger("lending.config")


@dataclass(frozen=True)
class BootstrapConfig:
    sol_mint: Optional[str] = None
    usdc_mint: Optional[str] = None
    sol_mint_authority: Optional[str] = None
    usdc_mint_authority: Optional[str] = None
    banks_initialized: bool = False

    @classmethod
    def from_json(cls, data: dict) -> "BootstrapConfig":
        return cls(
            sol_mint=data.get("SOL_MINT"),
            usdc_mint=data.get("USDC_MINT"),
            sol_mint_authority=data.get("SOL_MINT_AUTHORITY"),
            usdc_mint_authority=data.get("USDC_MINT_AUTHORITY"),
            banks_initialized=bool(data.get("banks_initialized", False)),
        )

    def to_json(self) -> dict:
        return {
            "SOL_MINT": self.sol_mint,
            "USDC_MINT": self.usdc_mint,
            "SOL_MINT_AUTHORITY": self.sol_mint_authority,
            "USDC_MINT_AUTHORITY": self.usdc_mint_authority,
            "banks_initialized": self.banks_initialized,
        }

    def mint_address(self, token: str) -> Optional[str]:
        return self.sol_mint if normalize_token(token) == "SOL" else self.usdc_mint

    def mint_for(self, token: str) -> Pubkey:
        value = self.mint_address(token)
        if not value:
            raise ConfigNotLoadedError(f"{normalize_token(token)} mint missing from banks config")
        return to_pubkey(value)

    def token_for_mint(self, mint: Pubkey) -> str:
        mint_str = str(mint)
        if self.sol_mint == mint_str:
            return "SOL"
        if self.usdc_mint == mint_str:
            return "USDC"
        raise ConfigNotLoadedError(f"Mint {mint_str} is not tracked by the banks config")

    def with_mint(self, token: str, mint: Pubkey, authority: Pubkey) -> "BootstrapConfig":
        if normalize_token(token) == "SOL":
            return replace(self, sol_mint=str(mint), sol_mint_authority=str(authority))
        return replace(self, usdc_mint=str(mint), usdc_mint_authority=str(authority))


class BankConfigStore:
    def __init__(self, path: str, url: Optional[str] = None, timeout: int = 10):
        self.path = Path(path)
        self.url = url
        self.timeout = timeout
        self._cached: Optional[BootstrapConfig] = None
        self._loaded = False

    def _read_file(self) -> Optional[BootstrapConfig]:
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as fh:
            return BootstrapConfig.from_json(json.load(fh))

    def _read_url(self) -> Optional[BootstrapConfig]:
        try:
            resp = requests.get(self.url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"Failed to fetch banks config from {self.url}: {exc}") from exc
        if resp.status_code == 404:
            # Banks not set up yet; expected before bootstrap.
            return None
        if not resp.ok:
            raise TransportError(f"Banks config fetch failed: HTTP {resp.status_code}: {resp.reason}")
        return BootstrapConfig.from_json(resp.json())

    def load(self) -> Optional[BootstrapConfig]:
        if not self._loaded:
            self._cached = self._read_url() if self.url else self._read_file()
            self._loaded = True
        return self._cached

    def invalidate(self) -> None:
        self._cached = None
        self._loaded = False

    def require(self) -> BootstrapConfig:
        config = self.load()
        if config is None or not config.banks_initialized:
            raise ConfigNotLoadedError("Banks have not been set up yet; run the bootstrap first")
        return config

    def save(self, config: BootstrapConfig) -> BootstrapConfig:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(config.to_json(), fh, indent=2)
        os.replace(tmp_path, self.path)
        self._cached = config
        self._loaded = True
        logger.info("banks_config_saved path=%s banks_initialized=%s", self.path, config.banks_initialized)
        return config
