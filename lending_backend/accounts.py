"""
On-chain state reads for the lending program.

`LedgerStateReader.fetch_*` return ``None`` when an account has not been created
yet; only transport failures raise. Found records are cached for a short window
keyed by (kind, address, cluster) and dropped explicitly after a mutation confirms.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from borsh_construct import CStruct, I64, U8, U64
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey
from spl.token._layouts import ACCOUNT_LAYOUT, MINT_LAYOUT

from .errors import AccountNotFoundError, AddressMismatchError, transport_errors
from .tx_builder import PROGRAM_ID, associated_token_address, bank_pda, user_account_pda

logger = logging.getLogger("lending.accounts")

BankLayout = CStruct(
    "authority" / U8[32],
    "mint_address" / U8[32],
    "total_deposits" / U64,
    "total_deposits_shares" / U64,
    "total_borrows" / U64,
    "total_borrows_shares" / U64,
    "liquidation_threshold" / U64,
    "liquidation_bonus" / U64,
    "liquidation_close_factor" / U64,
    "max_ltv" / U64,
    "interest_rate" / U64,
    "last_updated" / I64,
)
UserLayout = CStruct(
    "owner" / U8[32],
    "deposited_sol" / U64,
    "deposited_sol_shares" / U64,
    "borrowed_sol" / U64,
    "borrowed_sol_shares" / U64,
    "deposited_usdc" / U64,
    "deposited_usdc_shares" / U64,
    "borrowed_usdc" / U64,
    "borrowed_usdc_shares" / U64,
    "usdc_address" / U8[32],
    "last_updated" / I64,
)


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


BANK_DISCRIMINATOR = account_discriminator("Bank")
USER_DISCRIMINATOR = account_discriminator("User")


@dataclass(frozen=True)
class Bank:
    address: str
    authority: str
    mint_address: str
    total_deposits: int
    total_deposits_shares: int
    total_borrows: int
    total_borrows_shares: int
    liquidation_threshold: int
    liquidation_bonus: int
    liquidation_close_factor: int
    max_ltv: int
    interest_rate: int
    last_updated: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class UserAccount:
    address: str
    owner: str
    deposited_sol: int
    deposited_sol_shares: int
    borrowed_sol: int
    borrowed_sol_shares: int
    deposited_usdc: int
    deposited_usdc_shares: int
    borrowed_usdc: int
    borrowed_usdc_shares: int
    usdc_address: str
    last_updated: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MintInfo:
    address: str
    mint_authority: Optional[str]
    supply: int
    decimals: int
    is_initialized: bool


def account_bytes(value: Any) -> bytes:
    data = value.data
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    # handle (data, encoding) tuple/list shape
    raw = data[0] if isinstance(data, (list, tuple)) else data
    return base64.b64decode(raw) if isinstance(raw, str) else bytes(raw)


def _strip_discriminator(data: bytes, expected: bytes, kind: str) -> bytes:
    if len(data) < 8 or data[:8] != expected:
        raise ValueError(f"Account data is not a {kind} record")
    return data[8:]


def decode_bank(address: Pubkey, data: bytes) -> Bank:
    parsed = BankLayout.parse(_strip_discriminator(data, BANK_DISCRIMINATOR, "Bank"))
    return Bank(
        address=str(address),
        authority=str(Pubkey(bytes(parsed.authority))),
        mint_address=str(Pubkey(bytes(parsed.mint_address))),
        total_deposits=parsed.total_deposits,
        total_deposits_shares=parsed.total_deposits_shares,
        total_borrows=parsed.total_borrows,
        total_borrows_shares=parsed.total_borrows_shares,
        liquidation_threshold=parsed.liquidation_threshold,
        liquidation_bonus=parsed.liquidation_bonus,
        liquidation_close_factor=parsed.liquidation_close_factor,
        max_ltv=parsed.max_ltv,
        interest_rate=parsed.interest_rate,
        last_updated=parsed.last_updated,
    )


def decode_user(address: Pubkey, data: bytes) -> UserAccount:
    parsed = UserLayout.parse(_strip_discriminator(data, USER_DISCRIMINATOR, "User"))
    return UserAccount(
        address=str(address),
        owner=str(Pubkey(bytes(parsed.owner))),
        deposited_sol=parsed.deposited_sol,
        deposited_sol_shares=parsed.deposited_sol_shares,
        borrowed_sol=parsed.borrowed_sol,
        borrowed_sol_shares=parsed.borrowed_sol_shares,
        deposited_usdc=parsed.deposited_usdc,
        deposited_usdc_shares=parsed.deposited_usdc_shares,
        borrowed_usdc=parsed.borrowed_usdc,
        borrowed_usdc_shares=parsed.borrowed_usdc_shares,
        usdc_address=str(Pubkey(bytes(parsed.usdc_address))),
        last_updated=parsed.last_updated,
    )


def parse_mint(address: Pubkey, data: bytes) -> MintInfo:
    if len(data) < MINT_LAYOUT.sizeof():
        raise ValueError(f"Mint account too short: {len(data)} bytes")
    parsed = MINT_LAYOUT.parse(data)
    authority = Pubkey(parsed.mint_authority) if parsed.mint_authority_option != 0 else None
    return MintInfo(
        address=str(address),
        mint_authority=str(authority) if authority else None,
        supply=parsed.supply,
        decimals=parsed.decimals,
        is_initialized=parsed.is_initialized == 1,
    )


def parse_token_amount(data: bytes, expected_mint: Optional[Pubkey] = None) -> int:
    if len(data) < ACCOUNT_LAYOUT.sizeof():
        raise ValueError(f"Token account too short: {len(data)} bytes")
    parsed = ACCOUNT_LAYOUT.parse(data)
    mint = Pubkey(parsed.mint)
    if expected_mint and mint != expected_mint:
        raise ValueError(f"Token account mint mismatch: {mint} != {expected_mint}")
    return parsed.amount


class LedgerStateReader:
    def __init__(
        self,
        client,
        cluster: str = "localnet",
        program_id: Pubkey = PROGRAM_ID,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.cluster = cluster
        self.program_id = program_id
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[Tuple[str, str, str], Tuple[float, Any]] = {}

    def _cache_key(self, kind: str, address: Pubkey) -> Tuple[str, str, str]:
        return (kind, str(address), self.cluster)

    def _cached(self, kind: str, address: Pubkey, loader: Callable[[Pubkey], Any]) -> Any:
        key = self._cache_key(kind, address)
        hit = self._cache.get(key)
        now = self._clock()
        if hit and hit[0] > now:
            return hit[1]
        value = loader(address)
        if value is not None:
            self._cache[key] = (now + self.ttl_seconds, value)
        else:
            self._cache.pop(key, None)
        return value

    def invalidate(self, kind: Optional[str] = None, address: Optional[Pubkey] = None) -> None:
        logger.debug("cache_invalidate kind=%s address=%s cluster=%s", kind, address, self.cluster)
        if kind is None and address is None:
            self._cache.clear()
            return
        for key in list(self._cache):
            if kind is not None and key[0] != kind:
                continue
            if address is not None and key[1] != str(address):
                continue
            del self._cache[key]

    def get_raw_account(self, address: Pubkey):
        with transport_errors(f"get_account_info {address}"):
            resp = self.client.get_account_info(address, commitment=Confirmed)
        value = resp.value
        if value is None or value.data is None:
            return None
        return value

    def account_exists(self, address: Pubkey) -> bool:
        return self.get_raw_account(address) is not None

    def _load_bank(self, address: Pubkey) -> Optional[Bank]:
        value = self.get_raw_account(address)
        if value is None:
            return None
        return decode_bank(address, account_bytes(value))

    def _load_user(self, address: Pubkey) -> Optional[UserAccount]:
        value = self.get_raw_account(address)
        if value is None:
            return None
        return decode_user(address, account_bytes(value))

    def _load_mint(self, address: Pubkey) -> Optional[MintInfo]:
        value = self.get_raw_account(address)
        if value is None:
            return None
        return parse_mint(address, account_bytes(value))

    def fetch_bank(self, address: Pubkey) -> Optional[Bank]:
        return self._cached("bank", address, self._load_bank)

    def fetch_user_account(self, address: Pubkey) -> Optional[UserAccount]:
        return self._cached("user", address, self._load_user)

    def fetch_mint(self, address: Pubkey) -> Optional[MintInfo]:
        return self._cached("mint", address, self._load_mint)

    def fetch_bank_for_mint(self, mint: Pubkey) -> Optional[Bank]:
        return self.fetch_bank(bank_pda(mint, self.program_id))

    def fetch_user_for_wallet(self, wallet: Pubkey) -> Optional[UserAccount]:
        return self.fetch_user_account(user_account_pda(wallet, self.program_id))

    def require_bank(self, address: Pubkey) -> Bank:
        bank = self.fetch_bank(address)
        if bank is None:
            raise AccountNotFoundError(address, kind="bank")
        return bank

    def fetch_token_balance(self, owner: Pubkey, mint: Pubkey) -> int:
        """Raw balance of the owner's associated token account; 0 when it does not exist."""
        value = self.get_raw_account(associated_token_address(owner, mint))
        if value is None:
            return 0
        return parse_token_amount(account_bytes(value), expected_mint=mint)

    def verify_bank_compatibility(self, mint: Pubkey) -> Optional[Bank]:
        """
        Check that the bank at the address derived from `mint` was written by a program
        using the same seed scheme. Returns the bank, or None when it does not exist yet.
        """
        address = bank_pda(mint, self.program_id)
        value = self.get_raw_account(address)
        if value is None:
            return None
        data = account_bytes(value)
        if data[:8] != BANK_DISCRIMINATOR:
            raise AddressMismatchError("bank account discriminator", BANK_DISCRIMINATOR.hex(), data[:8].hex())
        bank = decode_bank(address, data)
        if bank.mint_address != str(mint):
            raise AddressMismatchError(f"bank {address} mint", str(mint), bank.mint_address)
        return bank

    def fetch_lamports(self, address: Pubkey) -> int:
        with transport_errors(f"get_balance {address}"):
            return self.client.get_balance(address, commitment=Confirmed).value

    def minimum_rent(self, size: int) -> int:
        with transport_errors("get_minimum_balance_for_rent_exemption"):
            return self.client.get_minimum_balance_for_rent_exemption(size).value
