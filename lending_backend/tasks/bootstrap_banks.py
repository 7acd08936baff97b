"""
One-time bootstrap of the lending protocol on a test cluster.

Behavior:
- Creates the SOL-like (9 decimals) and USDC-like (6 decimals) mints unless the banks
  config or settings already name them. New mints are persisted immediately.
- Initializes one bank per mint, skipping banks that already exist on-chain.
- Mints seed liquidity (10 units) to the deployer and deposits it into each bank,
  skipping banks whose deposits already cover the seed amount.
- Initializes the deployer's user account when missing.
- Writes banks-config.json with banks_initialized=true.
- Optionally funds a requesting wallet with test tokens (5 SOL-mint, 1000 USDC-mint).
- Idempotent: re-running against the same ledger creates nothing twice.
  Mints and banks are processed strictly in order, SOL then USDC.

Run:
  python -m lending_backend.tasks.bootstrap_banks [WALLET]
"""
from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from solana.rpc.api import Client as SolanaClient
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..accounts import LedgerStateReader
from ..bank_config import BankConfigStore, BootstrapConfig
from ..errors import AccountNotFoundError, AddressMismatchError, LendingClientError
from ..operations import LendingOperations
from ..sender import TransactionSender
from ..settings import Settings, load_deployer_keypair
from ..tx_builder import (
    MINT_LEN,
    PROGRAM_ID,
    TOKEN_DECIMALS,
    account_address,
    associated_token_address,
    bank_pda,
    build_create_ata_ix,
    build_create_mint_ixs,
    build_deposit_ix,
    build_initialize_bank_ix,
    build_mint_to_ix,
    treasury_pda,
    user_account_pda,
)

logger = logging.getLogger("lending.bootstrap")

LAMPORTS_PER_SOL = 1_000_000_000
MIN_DEPLOYER_LAMPORTS = 2 * LAMPORTS_PER_SOL
BOOTSTRAP_TOKENS = ("SOL", "USDC")

# Progress markers, in order. Each is checked against the ledger, never assumed.
NO_MINTS = "NoMints"
MINTS_CREATED = "MintsCreated"
BANKS_INITIALIZED = "BanksInitialized"
FUNDED = "Funded"
USER_ACCOUNT_INITIALIZED = "UserAccountInitialized"
DEPOSITED = "Deposited"


@dataclass
class StepResult:
    step: str
    token: Optional[str] = None
    signature: Optional[str] = None
    skipped: bool = False
    detail: Optional[str] = None


@dataclass
class BootstrapReport:
    config: BootstrapConfig
    steps: List[StepResult] = field(default_factory=list)

    def record(self, step: str, token: Optional[str] = None, signature: Optional[str] = None, skipped: bool = False, detail: Optional[str] = None) -> StepResult:
        result = StepResult(step=step, token=token, signature=signature, skipped=skipped, detail=detail)
        self.steps.append(result)
        return result


def unit_amount(token: str, units: int) -> int:
    return units * 10 ** TOKEN_DECIMALS[token]


class BankBootstrap:
    def __init__(
        self,
        settings: Settings,
        reader: LedgerStateReader,
        sender: TransactionSender,
        config_store: BankConfigStore,
        deployer: Keypair,
        program_id: Pubkey = PROGRAM_ID,
    ):
        self.settings = settings
        self.reader = reader
        self.sender = sender
        self.config_store = config_store
        self.deployer = deployer
        self.program_id = program_id
        self.operations = LendingOperations(reader, sender, config_store, program_id=program_id)

    @property
    def deployer_pubkey(self) -> Pubkey:
        return self.deployer.pubkey()

    # -- inspection -----------------------------------------------------

    def current_state(self) -> Dict[str, str]:
        """Probe the ledger and report how far each mint has progressed, without mutating anything."""
        config = self.config_store.load() or BootstrapConfig()
        states: Dict[str, str] = {}
        user_ready = self.reader.fetch_user_for_wallet(self.deployer_pubkey) is not None
        for token in BOOTSTRAP_TOKENS:
            mint_str = config.mint_address(token)
            if not mint_str:
                states[token] = NO_MINTS
                continue
            mint = Pubkey.from_string(mint_str)
            seed = unit_amount(token, self.settings.seed_liquidity_units)
            bank = self.reader.fetch_bank_for_mint(mint)
            if bank is None:
                states[token] = MINTS_CREATED
            elif bank.total_deposits >= seed:
                states[token] = DEPOSITED
            elif self.reader.fetch_token_balance(self.deployer_pubkey, mint) >= seed:
                states[token] = USER_ACCOUNT_INITIALIZED if user_ready else FUNDED
            else:
                states[token] = BANKS_INITIALIZED
        return states

    # -- steps ----------------------------------------------------------

    def ensure_airdrop(self, report: BootstrapReport) -> None:
        target = self.settings.deployer_airdrop_sol * LAMPORTS_PER_SOL
        if target <= 0:
            return
        balance = self.reader.fetch_lamports(self.deployer_pubkey)
        if balance >= MIN_DEPLOYER_LAMPORTS:
            report.record("airdrop", skipped=True, detail=f"balance={balance}")
            return
        sig = self.sender.airdrop(self.deployer_pubkey, target)
        report.record("airdrop", signature=sig)

    def ensure_mint(self, token: str, config: BootstrapConfig, report: BootstrapReport) -> BootstrapConfig:
        existing = config.mint_address(token) or self.settings.optional_pubkey(f"{token}_MINT")
        if existing:
            mint = Pubkey.from_string(str(existing))
            info = self.reader.fetch_mint(mint)
            if info is None:
                raise AccountNotFoundError(mint, kind=f"{token} mint")
            if info.decimals != TOKEN_DECIMALS[token]:
                raise LendingClientError(
                    f"{token} mint {mint} has {info.decimals} decimals, expected {TOKEN_DECIMALS[token]}"
                )
            authority = Pubkey.from_string(info.mint_authority) if info.mint_authority else self.deployer_pubkey
            report.record("create_mint", token=token, skipped=True, detail=str(mint))
            logger.info("mint_exists token=%s mint=%s", token, mint)
            if config.mint_address(token) == str(mint):
                return config
            return self.config_store.save(config.with_mint(token, mint, authority))

        mint_kp = Keypair()
        rent = self.reader.minimum_rent(MINT_LEN)
        ixs = build_create_mint_ixs(
            payer=self.deployer_pubkey,
            mint=mint_kp.pubkey(),
            decimals=TOKEN_DECIMALS[token],
            mint_authority=self.deployer_pubkey,
            rent_lamports=rent,
        )
        sig = self.sender.submit(ixs, self.deployer, [mint_kp])
        report.record("create_mint", token=token, signature=sig, detail=str(mint_kp.pubkey()))
        logger.info("mint_created token=%s mint=%s decimals=%s sig=%s", token, mint_kp.pubkey(), TOKEN_DECIMALS[token], sig)
        # Persist right away so a failure later in the run never creates a second mint.
        return self.config_store.save(config.with_mint(token, mint_kp.pubkey(), self.deployer_pubkey))

    def ensure_bank(self, token: str, mint: Pubkey, report: BootstrapReport) -> Pubkey:
        derived = bank_pda(mint, self.program_id)
        existing = self.reader.verify_bank_compatibility(mint)
        if existing is not None:
            report.record("initialize_bank", token=token, skipped=True, detail=str(derived))
            logger.info("bank_exists token=%s bank=%s", token, derived)
            return derived
        ix = build_initialize_bank_ix(
            self.deployer_pubkey,
            mint,
            self.settings.liquidation_threshold,
            self.settings.max_ltv,
            program_id=self.program_id,
        )
        sig = self.sender.submit([ix], self.deployer)
        self.reader.invalidate("bank", derived)
        bank_address = account_address(ix, "initialize_bank", "bank")
        report.record("initialize_bank", token=token, signature=sig, detail=str(bank_address))
        logger.info("bank_initialized token=%s bank=%s sig=%s", token, bank_address, sig)
        return bank_address

    def ensure_ata(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        ata = associated_token_address(owner, mint)
        if not self.reader.account_exists(ata):
            sig = self.sender.submit([build_create_ata_ix(self.deployer_pubkey, owner, mint)], self.deployer)
            logger.info("ata_created owner=%s mint=%s ata=%s sig=%s", owner, mint, ata, sig)
        return ata

    def mint_tokens(self, owner: Pubkey, mint: Pubkey, amount: int) -> str:
        ata = self.ensure_ata(owner, mint)
        return self.sender.submit([build_mint_to_ix(mint, ata, self.deployer_pubkey, amount)], self.deployer)

    def ensure_user_account(self, report: BootstrapReport) -> None:
        result = self.operations.initialize_account(self.deployer)
        report.record("initialize_account", signature=result.signature, skipped=result.skipped)

    def ensure_funded(self, token: str, mint: Pubkey, bank_address: Pubkey, report: BootstrapReport) -> None:
        derived_bank = bank_pda(mint, self.program_id)
        if derived_bank != bank_address:
            raise AddressMismatchError(f"{token} bank", bank_address, derived_bank)
        amount = unit_amount(token, self.settings.seed_liquidity_units)
        bank = self.reader.require_bank(bank_address)
        if bank.total_deposits >= amount:
            report.record("fund_bank", token=token, skipped=True, detail=f"total_deposits={bank.total_deposits}")
            logger.info("bank_already_funded token=%s total_deposits=%s", token, bank.total_deposits)
            return

        # Tokens minted by an earlier interrupted run count toward the seed.
        held = self.reader.fetch_token_balance(self.deployer_pubkey, mint)
        if held >= amount:
            report.record("mint_seed_liquidity", token=token, skipped=True, detail=f"balance={held}")
            logger.info("seed_liquidity_held token=%s balance=%s", token, held)
        else:
            sig = self.mint_tokens(self.deployer_pubkey, mint, amount - held)
            report.record("mint_seed_liquidity", token=token, signature=sig, detail=str(amount - held))
            logger.info("seed_liquidity_minted token=%s amount=%s held=%s sig=%s", token, amount - held, held, sig)

        self.ensure_user_account(report)

        ix = build_deposit_ix(self.deployer_pubkey, mint, amount, token, program_id=self.program_id)
        for slot, expected in (
            ("bank", bank_address),
            ("bank_token_account", treasury_pda(mint, self.program_id)),
            ("user_account", user_account_pda(self.deployer_pubkey, self.program_id)),
        ):
            actual = account_address(ix, "deposit", slot)
            if actual != expected:
                raise AddressMismatchError(f"{token} deposit {slot}", expected, actual)
        sig = self.sender.submit([ix], self.deployer)
        self.reader.invalidate("bank", bank_address)
        self.reader.invalidate("user", user_account_pda(self.deployer_pubkey, self.program_id))
        report.record("deposit_seed_liquidity", token=token, signature=sig, detail=str(amount))
        logger.info("seed_liquidity_deposited token=%s amount=%s bank=%s sig=%s", token, amount, bank_address, sig)

    def fund_wallet(self, wallet: Pubkey, config: BootstrapConfig, report: Optional[BootstrapReport] = None) -> List[str]:
        """Faucet: mint the preset test amounts of both tokens to `wallet`."""
        presets = {"SOL": self.settings.faucet_sol_units, "USDC": self.settings.faucet_usdc_units}
        signatures = []
        for token in BOOTSTRAP_TOKENS:
            amount = unit_amount(token, presets[token])
            sig = self.mint_tokens(wallet, config.mint_for(token), amount)
            signatures.append(sig)
            if report is not None:
                report.record("faucet", token=token, signature=sig, detail=f"{wallet}:{amount}")
            logger.info("faucet_minted wallet=%s token=%s amount=%s sig=%s", wallet, token, amount, sig)
        return signatures

    # -- workflow -------------------------------------------------------

    def run(self, faucet_wallet: Optional[Pubkey] = None) -> BootstrapReport:
        self.config_store.invalidate()
        config = self.config_store.load() or BootstrapConfig()
        report = BootstrapReport(config=config)
        logger.info("bootstrap_start deployer=%s program=%s", self.deployer_pubkey, self.program_id)

        self.ensure_airdrop(report)
        for token in BOOTSTRAP_TOKENS:
            config = self.ensure_mint(token, config, report)

        for token in BOOTSTRAP_TOKENS:
            mint = config.mint_for(token)
            bank_address = self.ensure_bank(token, mint, report)
            self.ensure_funded(token, mint, bank_address, report)
        self.ensure_user_account(report)

        if not config.banks_initialized:
            config = self.config_store.save(replace(config, banks_initialized=True))
        report.config = config
        logger.info("bootstrap_complete sol_mint=%s usdc_mint=%s", config.sol_mint, config.usdc_mint)

        if faucet_wallet is not None:
            self.fund_wallet(faucet_wallet, config, report)
        return report


def build_bootstrap(settings: Settings, client, deployer: Keypair) -> BankBootstrap:
    program_id = settings.program_pubkey()
    reader = LedgerStateReader(client, cluster=settings.cluster, program_id=program_id, ttl_seconds=settings.cache_ttl_seconds)
    sender = TransactionSender(client, sleep_seconds=settings.confirm_sleep_seconds)
    store = BankConfigStore(settings.banks_config_path)
    return BankBootstrap(settings, reader, sender, store, deployer, program_id=program_id)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Create mints and banks for the lending program on a test cluster.")
    parser.add_argument("wallet", nargs="?", help="Wallet to fund with test tokens after setup.")
    parser.add_argument("--state", action="store_true", help="Only print how far the bootstrap has progressed.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    settings = Settings()
    client = SolanaClient(settings.solana_rpc, timeout=settings.rpc_timeout)
    bootstrap = build_bootstrap(settings, client, load_deployer_keypair(settings))

    if args.state:
        for token, state in bootstrap.current_state().items():
            print(f"[state] {token}: {state}")
        return

    wallet = Pubkey.from_string(args.wallet) if args.wallet else None
    report = bootstrap.run(faucet_wallet=wallet)
    for step in report.steps:
        status = "skipped" if step.skipped else (step.signature or "ok")
        print(f"[{step.step}] token={step.token or '-'} {status} {step.detail or ''}".rstrip())
    print(json.dumps(report.config.to_json(), indent=2))


if __name__ == "__main__":
    main()
