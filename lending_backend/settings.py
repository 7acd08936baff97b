from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from solders.keypair import Keypair
from solders.pubkey import Pubkey

DEFAULT_PROGRAM_ID = "9CoY42r3y5WFDJjQX97e9m9THcVGpvuVSKjBjGkiksMR"


class Settings(BaseSettings):
    solana_rpc: str = "http://127.0.0.1:8899"
    cluster: str = "localnet"
    rpc_timeout: int = 30
    program_id: str = DEFAULT_PROGRAM_ID
    deployer_private_key: Optional[str] = None  # JSON array of secret key bytes
    deployer_keypair_path: str = str(Path.home() / ".config" / "solana" / "id.json")
    banks_config_path: str = "public/anchor/banks-config.json"
    banks_config_url: Optional[str] = None
    sol_mint: Optional[str] = None
    usdc_mint: Optional[str] = None
    liquidation_threshold: int = 80  # percent
    max_ltv: int = 70  # percent
    seed_liquidity_units: int = 10
    faucet_sol_units: int = 5
    faucet_usdc_units: int = 1000
    deployer_airdrop_sol: int = 100  # test networks only, 0 disables
    cache_ttl_seconds: float = 30.0
    confirm_sleep_seconds: float = 0.5
    price_update_account: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def program_pubkey(self) -> Pubkey:
        return parse_pubkey("PROGRAM_ID", self.program_id)

    def optional_pubkey(self, env_name: str) -> Optional[Pubkey]:
        value = getattr(self, env_name.lower())
        if not value:
            return None
        return parse_pubkey(env_name, value)


def parse_pubkey(env_name: str, value: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"{env_name} is not a valid pubkey: {exc}") from exc


def keypair_from_secret(raw) -> Keypair:
    if isinstance(raw, list):
        secret = bytes(raw)
    elif isinstance(raw, dict) and "secretKey" in raw:
        secret = bytes(raw["secretKey"])
    else:
        raise ValueError("Unsupported keypair format")
    return Keypair.from_bytes(secret)


def load_deployer_keypair(settings: Settings) -> Keypair:
    """
    Resolve the deployer keypair: DEPLOYER_PRIVATE_KEY first, then the keypair file
    written by the Solana CLI.
    """
    if settings.deployer_private_key:
        return keypair_from_secret(json.loads(settings.deployer_private_key))
    path = os.path.expanduser(settings.deployer_keypair_path)
    if not os.path.exists(path):
        raise FileNotFoundError(
            f"Deployer keypair not found at {path}; configure the Solana CLI or set DEPLOYER_PRIVATE_KEY"
        )
    with open(path, "r", encoding="utf-8") as fh:
        return keypair_from_secret(json.load(fh))
