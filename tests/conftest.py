"""Shared fixtures and an in-memory ledger that stands in for the RPC client."""
from __future__ import annotations

import json
import struct
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from solana.rpc.core import UnconfirmedTxError
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from lending_backend.accounts import (
    BANK_DISCRIMINATOR,
    USER_DISCRIMINATOR,
    BankLayout,
    LedgerStateReader,
    UserLayout,
)
from lending_backend.bank_config import BankConfigStore
from lending_backend.operations import LendingOperations
from lending_backend.sender import TransactionSender
from lending_backend.settings import Settings
from lending_backend.tasks.bootstrap_banks import BankBootstrap
from lending_backend.tx_builder import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    PROGRAM_ID,
    SYS_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    sighash,
    token_type_from_tag,
)

RENT_EXEMPT_LAMPORTS = 1_461_600
TOKEN_ACCOUNT_LEN = 165
LENDING_INSTRUCTIONS = {
    sighash(name): name
    for name in ("initialize_bank", "initialize_account", "deposit", "withdraw", "borrow", "repay", "liquidate")
}


class InstructionFailed(Exception):
    def __init__(self, code: int):
        super().__init__(code)
        self.code = code


def token_account_bytes(mint: Pubkey, owner: Pubkey, amount: int) -> bytes:
    data = bytearray(TOKEN_ACCOUNT_LEN)
    data[0:32] = bytes(mint)
    data[32:64] = bytes(owner)
    struct.pack_into("<Q", data, 64, amount)
    data[108] = 1  # AccountState::Initialized
    return bytes(data)


def mint_account_bytes(authority: Pubkey, decimals: int, supply: int = 0) -> bytes:
    data = bytearray(82)
    struct.pack_into("<I", data, 0, 1)
    data[4:36] = bytes(authority)
    struct.pack_into("<Q", data, 36, supply)
    data[44] = decimals
    data[45] = 1
    return bytes(data)


def bank_account_bytes(authority: Pubkey, mint: Pubkey, liquidation_threshold: int, max_ltv: int, **fields) -> bytes:
    values = {
        "authority": list(bytes(authority)),
        "mint_address": list(bytes(mint)),
        "total_deposits": 0,
        "total_deposits_shares": 0,
        "total_borrows": 0,
        "total_borrows_shares": 0,
        "liquidation_threshold": liquidation_threshold,
        "liquidation_bonus": 0,
        "liquidation_close_factor": 0,
        "max_ltv": max_ltv,
        "interest_rate": 0,
        "last_updated": 0,
    }
    values.update(fields)
    return BANK_DISCRIMINATOR + BankLayout.build(values)


def user_account_bytes(owner: Pubkey) -> bytes:
    values = {"owner": list(bytes(owner)), "usdc_address": [0] * 32, "last_updated": 0}
    for token in ("sol", "usdc"):
        for side in ("deposited", "borrowed"):
            values[f"{side}_{token}"] = 0
            values[f"{side}_{token}_shares"] = 0
    return USER_DISCRIMINATOR + UserLayout.build(values)


class FakeLedger:
    """
    Implements the subset of `solana.rpc.api.Client` the package uses.

    Transactions are decoded from their wire bytes and applied atomically:
    system account creation, SPL mint/ATA/mint_to, and the lending program's
    instructions. Failures are reported through the signature status, the way
    a cluster reports an executed-but-failed transaction.
    """

    def __init__(self, program_id: Pubkey = PROGRAM_ID):
        self.program_id = program_id
        self.accounts: Dict[Pubkey, SimpleNamespace] = {}
        self.lamports: Dict[Pubkey, int] = {}
        self.statuses: Dict[Signature, Optional[dict]] = {}
        self.calls: List[str] = []
        self.raw_sends: List[bytes] = []
        self.executed: List[str] = []
        self.fail_next: Dict[str, int] = {}
        self.drop_next = 0
        self.preflight_errors: List[Exception] = []
        self.block_height = 100

    # -- helpers --------------------------------------------------------

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        if self.fail_next.get(method, 0) > 0:
            self.fail_next[method] -= 1
            raise ConnectionError(f"{method}: connection refused")

    def count(self, instruction: str) -> int:
        return self.executed.count(instruction)

    def set_account(self, address: Pubkey, data: bytes, owner: Pubkey = PROGRAM_ID) -> None:
        self.accounts[address] = SimpleNamespace(data=bytes(data), owner=owner, lamports=RENT_EXEMPT_LAMPORTS)

    def token_balance(self, address: Pubkey) -> int:
        acct = self.accounts.get(address)
        return struct.unpack_from("<Q", acct.data, 64)[0] if acct else 0

    # -- RPC surface ----------------------------------------------------

    def get_latest_blockhash(self, commitment=None):
        self._maybe_fail("get_latest_blockhash")
        self.block_height += 1
        return SimpleNamespace(
            value=SimpleNamespace(blockhash=Hash.new_unique(), last_valid_block_height=self.block_height + 150)
        )

    def get_account_info(self, address, commitment=None):
        self._maybe_fail("get_account_info")
        return SimpleNamespace(value=self.accounts.get(address))

    def get_balance(self, address, commitment=None):
        self._maybe_fail("get_balance")
        return SimpleNamespace(value=self.lamports.get(address, 0))

    def get_minimum_balance_for_rent_exemption(self, size, commitment=None):
        self._maybe_fail("get_minimum_balance_for_rent_exemption")
        return SimpleNamespace(value=RENT_EXEMPT_LAMPORTS)

    def request_airdrop(self, address, lamports, commitment=None):
        self._maybe_fail("request_airdrop")
        self.lamports[address] = self.lamports.get(address, 0) + lamports
        sig = Signature.new_unique()
        self.statuses[sig] = None
        return SimpleNamespace(value=sig)

    def send_raw_transaction(self, raw, opts=None):
        self.raw_sends.append(bytes(raw))
        self._maybe_fail("send_raw_transaction")
        if self.preflight_errors:
            raise self.preflight_errors.pop(0)
        tx = VersionedTransaction.from_bytes(bytes(raw))
        sig = tx.signatures[0]
        if sig in self.statuses:
            return SimpleNamespace(value=sig)
        if self.drop_next > 0:
            self.drop_next -= 1
            return SimpleNamespace(value=sig)
        self.statuses[sig] = self._execute(tx)
        return SimpleNamespace(value=sig)

    def confirm_transaction(self, sig, commitment=None, sleep_seconds=0.5, last_valid_block_height=None):
        self._maybe_fail("confirm_transaction")
        if sig not in self.statuses:
            raise UnconfirmedTxError(f"Unable to confirm transaction {sig}")
        return SimpleNamespace(value=[SimpleNamespace(err=self.statuses[sig], confirmation_status="confirmed")])

    # -- execution ------------------------------------------------------

    def _execute(self, tx: VersionedTransaction) -> Optional[dict]:
        message = tx.message
        keys = list(message.account_keys)
        signers = set(keys[: message.header.num_required_signatures])
        snapshot = dict(self.accounts)
        names = []
        for index, compiled in enumerate(message.instructions):
            program = keys[compiled.program_id_index]
            accounts = [keys[i] for i in compiled.accounts]
            try:
                names.append(self._apply(program, accounts, bytes(compiled.data), signers))
            except InstructionFailed as exc:
                self.accounts = snapshot
                return {"InstructionError": [index, {"Custom": exc.code}]}
        self.executed.extend(names)
        return None

    def _create(self, address: Pubkey, data: bytes, owner: Pubkey) -> None:
        if address in self.accounts:
            raise InstructionFailed(0)
        self.set_account(address, data, owner)

    def _move_tokens(self, source: Pubkey, dest: Pubkey, mint: Pubkey, owner: Pubkey, amount: int) -> None:
        """SPL transfer; `owner` is used only when `dest` has to be created (init_if_needed)."""
        available = self.token_balance(source)
        if source not in self.accounts or available < amount:
            raise InstructionFailed(1)
        self._set_token_amount(source, mint, available - amount)
        if dest not in self.accounts:
            self.set_account(dest, token_account_bytes(mint, owner, 0), TOKEN_PROGRAM_ID)
        self._set_token_amount(dest, mint, self.token_balance(dest) + amount)

    def _set_token_amount(self, address: Pubkey, mint: Pubkey, amount: int) -> None:
        owner = Pubkey.from_bytes(self.accounts[address].data[32:64])
        self.set_account(address, token_account_bytes(mint, owner, amount), TOKEN_PROGRAM_ID)

    def _apply(self, program: Pubkey, accounts: List[Pubkey], data: bytes, signers) -> str:
        if program == SYS_PROGRAM_ID:
            space = struct.unpack_from("<Q", data, 12)[0]
            owner = Pubkey.from_bytes(data[20:52])
            self._create(accounts[1], bytes(space), owner)
            return "create_account"
        if program == TOKEN_PROGRAM_ID:
            return self._apply_token(accounts, data)
        if program == ASSOCIATED_TOKEN_PROGRAM_ID:
            ata, owner, mint = accounts[1], accounts[2], accounts[3]
            self._create(ata, token_account_bytes(mint, owner, 0), TOKEN_PROGRAM_ID)
            return "create_associated_token_account"
        if program == self.program_id:
            name = LENDING_INSTRUCTIONS[data[:8]]
            if accounts[0] not in signers:
                raise InstructionFailed(3010)
            getattr(self, f"_lending_{name}")(accounts, data[8:])
            return name
        raise InstructionFailed(999)

    def _apply_token(self, accounts: List[Pubkey], data: bytes) -> str:
        tag = data[0]
        if tag == 0:
            mint = accounts[0]
            existing = self.accounts.get(mint)
            if existing is None or existing.owner != TOKEN_PROGRAM_ID or existing.data[45] == 1:
                raise InstructionFailed(6)
            self.set_account(mint, mint_account_bytes(Pubkey.from_bytes(data[2:34]), data[1]), TOKEN_PROGRAM_ID)
            return "initialize_mint"
        if tag == 7:
            mint, dest = accounts[0], accounts[1]
            amount = struct.unpack_from("<Q", data, 1)[0]
            mint_data = self.accounts[mint].data
            supply = struct.unpack_from("<Q", mint_data, 36)[0]
            self.set_account(
                mint,
                mint_account_bytes(Pubkey.from_bytes(mint_data[4:36]), mint_data[44], supply + amount),
                TOKEN_PROGRAM_ID,
            )
            self._set_token_amount(dest, mint, self.token_balance(dest) + amount)
            return "mint_to"
        raise InstructionFailed(999)

    # -- lending program ------------------------------------------------

    def _read(self, address: Pubkey, layout, discriminator: bytes):
        acct = self.accounts.get(address)
        if acct is None or acct.data[:8] != discriminator:
            # Anchor: AccountNotInitialized
            raise InstructionFailed(3012)
        return layout.parse(acct.data[8:])

    def _write(self, address: Pubkey, layout, discriminator: bytes, values) -> None:
        self.set_account(address, discriminator + layout.build(values))

    def _lending_initialize_bank(self, accounts: List[Pubkey], args: bytes) -> None:
        signer, mint, bank, treasury = accounts[:4]
        threshold, max_ltv = struct.unpack_from("<QQ", args, 0)
        self._create(bank, bank_account_bytes(signer, mint, threshold, max_ltv), self.program_id)
        self._create(treasury, token_account_bytes(mint, treasury, 0), TOKEN_PROGRAM_ID)

    def _lending_initialize_account(self, accounts: List[Pubkey], args: bytes) -> None:
        signer, user = accounts[:2]
        self._create(user, user_account_bytes(signer), self.program_id)

    def _amount_args(self, args: bytes):
        return struct.unpack_from("<Q", args, 0)[0], token_type_from_tag(args[8]).lower()

    def _lending_deposit(self, accounts: List[Pubkey], args: bytes) -> None:
        signer, mint, bank_addr, treasury, user_addr, user_ata = accounts[:6]
        amount, token = self._amount_args(args)
        bank = self._read(bank_addr, BankLayout, BANK_DISCRIMINATOR)
        user = self._read(user_addr, UserLayout, USER_DISCRIMINATOR)
        self._move_tokens(user_ata, treasury, mint, treasury, amount)
        shares = amount if bank.total_deposits == 0 else amount * bank.total_deposits_shares // bank.total_deposits
        bank.total_deposits += amount
        bank.total_deposits_shares += shares
        user[f"deposited_{token}"] += amount
        user[f"deposited_{token}_shares"] += shares
        self._write(bank_addr, BankLayout, BANK_DISCRIMINATOR, bank)
        self._write(user_addr, UserLayout, USER_DISCRIMINATOR, user)

    def _lending_withdraw(self, accounts: List[Pubkey], args: bytes) -> None:
        signer, mint, bank_addr, treasury, user_addr, user_ata = accounts[:6]
        amount, token = self._amount_args(args)
        bank = self._read(bank_addr, BankLayout, BANK_DISCRIMINATOR)
        user = self._read(user_addr, UserLayout, USER_DISCRIMINATOR)
        if user[f"deposited_{token}"] < amount:
            raise InstructionFailed(6000)
        self._move_tokens(treasury, user_ata, mint, signer, amount)
        bank.total_deposits -= amount
        user[f"deposited_{token}"] -= amount
        self._write(bank_addr, BankLayout, BANK_DISCRIMINATOR, bank)
        self._write(user_addr, UserLayout, USER_DISCRIMINATOR, user)

    def _lending_borrow(self, accounts: List[Pubkey], args: bytes) -> None:
        signer, mint, bank_addr, treasury, user_addr, user_ata = accounts[:6]
        amount, token = self._amount_args(args)
        bank = self._read(bank_addr, BankLayout, BANK_DISCRIMINATOR)
        user = self._read(user_addr, UserLayout, USER_DISCRIMINATOR)
        # Same-asset collateral at par; the real program prices collateral through the oracle.
        borrowable = user[f"deposited_{token}"] * bank.liquidation_threshold // 100 - user[f"borrowed_{token}"]
        if amount > borrowable:
            raise InstructionFailed(6001)
        self._move_tokens(treasury, user_ata, mint, user_addr, amount)
        bank.total_borrows += amount
        user[f"borrowed_{token}"] += amount
        self._write(bank_addr, BankLayout, BANK_DISCRIMINATOR, bank)
        self._write(user_addr, UserLayout, USER_DISCRIMINATOR, user)

    def _lending_repay(self, accounts: List[Pubkey], args: bytes) -> None:
        signer, mint, bank_addr, treasury, user_addr, user_ata = accounts[:6]
        amount, token = self._amount_args(args)
        bank = self._read(bank_addr, BankLayout, BANK_DISCRIMINATOR)
        user = self._read(user_addr, UserLayout, USER_DISCRIMINATOR)
        if user[f"borrowed_{token}"] < amount:
            raise InstructionFailed(6002)
        self._move_tokens(user_ata, treasury, mint, treasury, amount)
        bank.total_borrows -= amount
        user[f"borrowed_{token}"] -= amount
        self._write(bank_addr, BankLayout, BANK_DISCRIMINATOR, bank)
        self._write(user_addr, UserLayout, USER_DISCRIMINATOR, user)

    def _lending_liquidate(self, accounts: List[Pubkey], args: bytes) -> None:
        raise InstructionFailed(6003)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def deployer() -> Keypair:
    return Keypair()


@pytest.fixture()
def price_update() -> Pubkey:
    return Pubkey.new_unique()


@pytest.fixture()
def settings(tmp_path, deployer, price_update) -> Settings:
    return Settings(
        banks_config_path=str(tmp_path / "anchor" / "banks-config.json"),
        deployer_private_key=json.dumps(list(bytes(deployer))),
        sol_mint=None,
        usdc_mint=None,
        confirm_sleep_seconds=0,
        price_update_account=str(price_update),
    )


@pytest.fixture()
def reader(ledger, settings) -> LedgerStateReader:
    return LedgerStateReader(ledger, cluster=settings.cluster, program_id=PROGRAM_ID)


@pytest.fixture()
def sender(ledger) -> TransactionSender:
    return TransactionSender(ledger, sleep_seconds=0)


@pytest.fixture()
def config_store(settings) -> BankConfigStore:
    return BankConfigStore(settings.banks_config_path)


@pytest.fixture()
def bootstrap(settings, reader, sender, config_store, deployer) -> BankBootstrap:
    return BankBootstrap(settings, reader, sender, config_store, deployer, program_id=PROGRAM_ID)


@pytest.fixture()
def operations(reader, sender, config_store, price_update) -> LendingOperations:
    return LendingOperations(reader, sender, config_store, program_id=PROGRAM_ID, price_update=price_update)


@pytest.fixture()
def bootstrapped(bootstrap):
    return bootstrap.run()


@pytest.fixture()
def funded_user(ledger, bootstrap, bootstrapped, operations) -> Keypair:
    """A fresh wallet with faucet tokens and an initialized user account."""
    user = Keypair()
    bootstrap.fund_wallet(user.pubkey(), bootstrapped.config)
    operations.initialize_account(user)
    return user
