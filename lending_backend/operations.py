"""
Single-step user mutations against the lending program.

Every call resolves the mint from the banks config before touching the network,
so an untracked mint or a missing config fails with ConfigNotLoadedError up front.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .accounts import LedgerStateReader
from .bank_config import BankConfigStore, BootstrapConfig
from .errors import AccountNotFoundError, ConfigNotLoadedError, InstructionRejectedError
from .sender import TransactionSender
from .tx_builder import (
    PROGRAM_ID,
    TOKEN_DECIMALS,
    bank_pda,
    build_borrow_ix,
    build_deposit_ix,
    build_initialize_account_ix,
    build_liquidate_ix,
    build_repay_ix,
    build_withdraw_ix,
    instruction_to_dict,
    message_from_instructions,
    to_base_units,
    to_pubkey,
    user_account_pda,
)

logger = logging.getLogger("lending.operations")

Amount = Union[int, float, str, Decimal]
USER_OPERATIONS = ("deposit", "withdraw", "borrow", "repay")


@dataclass
class OperationResult:
    operation: str
    signature: Optional[str]
    skipped: bool = False
    token: Optional[str] = None
    raw_amount: Optional[int] = None


@dataclass
class UnsignedTransaction:
    operation: str
    message_b64: str
    recent_blockhash: str
    instructions: List[dict] = field(default_factory=list)
    raw_amount: Optional[int] = None


def resolve_asset(config: BootstrapConfig, asset: Union[str, Pubkey]) -> Tuple[str, Pubkey]:
    """Accept a token symbol ("SOL"/"USDC") or a mint address; both must be tracked by the config."""
    if isinstance(asset, str) and asset.strip().upper() in TOKEN_DECIMALS:
        token = asset.strip().upper()
        return token, config.mint_for(token)
    try:
        mint = to_pubkey(asset)
    except ValueError as exc:
        raise ConfigNotLoadedError(f"Unknown asset {asset}") from exc
    return config.token_for_mint(mint), mint


class LendingOperations:
    def __init__(
        self,
        reader: LedgerStateReader,
        sender: TransactionSender,
        config_store: BankConfigStore,
        program_id: Pubkey = PROGRAM_ID,
        price_update: Optional[Pubkey] = None,
    ):
        self.reader = reader
        self.sender = sender
        self.config_store = config_store
        self.program_id = program_id
        self.price_update = price_update

    def _invalidate(self, wallet: Pubkey, mints: List[Pubkey]) -> None:
        self.reader.invalidate("user", user_account_pda(wallet, self.program_id))
        for mint in mints:
            self.reader.invalidate("bank", bank_pda(mint, self.program_id))

    def _resolve_price_update(self, price_update: Optional[Union[str, Pubkey]]) -> Pubkey:
        if price_update is not None:
            return to_pubkey(price_update)
        if self.price_update is None:
            raise ConfigNotLoadedError("PRICE_UPDATE_ACCOUNT not configured and no price update account given")
        return self.price_update

    def initialize_account(self, signer: Keypair) -> OperationResult:
        wallet = signer.pubkey()
        user_account = user_account_pda(wallet, self.program_id)
        if self.reader.account_exists(user_account):
            logger.info("user_account_exists wallet=%s account=%s", wallet, user_account)
            return OperationResult("initialize_account", None, skipped=True)
        try:
            sig = self.sender.submit([build_initialize_account_ix(wallet, self.program_id)], signer)
        except InstructionRejectedError as exc:
            if not exc.already_in_use:
                raise
            # Created by a concurrent caller between the check and the submit.
            logger.info("user_account_exists wallet=%s account=%s via=rejection", wallet, user_account)
            return OperationResult("initialize_account", None, skipped=True)
        self.reader.invalidate("user", user_account)
        logger.info("user_account_initialized wallet=%s sig=%s", wallet, sig)
        return OperationResult("initialize_account", sig)

    def build_instruction(
        self,
        operation: str,
        wallet: Pubkey,
        asset: Union[str, Pubkey],
        amount: Amount,
        price_update: Optional[Union[str, Pubkey]] = None,
        config: Optional[BootstrapConfig] = None,
    ) -> Tuple[Instruction, str, Pubkey, int]:
        if operation not in USER_OPERATIONS:
            raise ValueError(f"Unsupported operation {operation}")
        config = config or self.config_store.require()
        token, mint = resolve_asset(config, asset)
        raw_amount = to_base_units(amount, token)
        if raw_amount <= 0:
            raise ValueError("Amount must be greater than zero")
        if operation == "deposit":
            ix = build_deposit_ix(wallet, mint, raw_amount, token, program_id=self.program_id)
        elif operation == "withdraw":
            ix = build_withdraw_ix(wallet, mint, raw_amount, token, program_id=self.program_id)
        elif operation == "repay":
            ix = build_repay_ix(wallet, mint, raw_amount, token, program_id=self.program_id)
        else:
            ix = build_borrow_ix(
                wallet,
                mint,
                raw_amount,
                token,
                self._resolve_price_update(price_update),
                program_id=self.program_id,
            )
        return ix, token, mint, raw_amount

    def _require_user_account(self, wallet: Pubkey) -> None:
        user_account = user_account_pda(wallet, self.program_id)
        if self.reader.fetch_user_account(user_account) is None:
            raise AccountNotFoundError(user_account, kind="user account")

    def execute(
        self,
        operation: str,
        signer: Keypair,
        asset: Union[str, Pubkey],
        amount: Amount,
        price_update: Optional[Union[str, Pubkey]] = None,
    ) -> OperationResult:
        wallet = signer.pubkey()
        ix, token, mint, raw_amount = self.build_instruction(operation, wallet, asset, amount, price_update)
        self._require_user_account(wallet)
        sig = self.sender.submit([ix], signer)
        self._invalidate(wallet, [mint])
        logger.info("%s_confirmed wallet=%s token=%s amount=%s sig=%s", operation, wallet, token, raw_amount, sig)
        return OperationResult(operation, sig, token=token, raw_amount=raw_amount)

    def deposit(self, signer: Keypair, asset: Union[str, Pubkey], amount: Amount) -> OperationResult:
        return self.execute("deposit", signer, asset, amount)

    def withdraw(self, signer: Keypair, asset: Union[str, Pubkey], amount: Amount) -> OperationResult:
        return self.execute("withdraw", signer, asset, amount)

    def borrow(
        self,
        signer: Keypair,
        asset: Union[str, Pubkey],
        amount: Amount,
        price_update: Optional[Union[str, Pubkey]] = None,
    ) -> OperationResult:
        return self.execute("borrow", signer, asset, amount, price_update)

    def repay(self, signer: Keypair, asset: Union[str, Pubkey], amount: Amount) -> OperationResult:
        return self.execute("repay", signer, asset, amount)

    def liquidate(
        self,
        liquidator: Keypair,
        collateral: Union[str, Pubkey],
        borrowed: Union[str, Pubkey],
        price_update: Optional[Union[str, Pubkey]] = None,
    ) -> OperationResult:
        config = self.config_store.require()
        _, collateral_mint = resolve_asset(config, collateral)
        borrowed_token, borrowed_mint = resolve_asset(config, borrowed)
        wallet = liquidator.pubkey()
        liquidator_account = user_account_pda(wallet, self.program_id)
        ix = build_liquidate_ix(
            wallet,
            self._resolve_price_update(price_update),
            collateral_mint,
            borrowed_mint,
            liquidator_account,
            borrowed_token,
            program_id=self.program_id,
        )
        sig = self.sender.submit([ix], liquidator)
        self._invalidate(wallet, [collateral_mint, borrowed_mint])
        logger.info("liquidate_confirmed liquidator=%s borrowed=%s sig=%s", wallet, borrowed_token, sig)
        return OperationResult("liquidate", sig, token=borrowed_token)

    def build_unsigned(
        self,
        operation: str,
        wallet: Union[str, Pubkey],
        asset: Union[str, Pubkey],
        amount: Amount,
        price_update: Optional[Union[str, Pubkey]] = None,
    ) -> UnsignedTransaction:
        """Compile a message for a browser wallet to sign; the wallet pays fees."""
        payer = to_pubkey(wallet)
        if operation == "initialize_account":
            ixs = [build_initialize_account_ix(payer, self.program_id)]
            raw_amount = None
        else:
            ix, _, _, raw_amount = self.build_instruction(operation, payer, asset, amount, price_update)
            ixs = [ix]
        blockhash, _ = self.sender.latest_blockhash()
        return UnsignedTransaction(
            operation=operation,
            message_b64=message_from_instructions(ixs, payer, blockhash),
            recent_blockhash=str(blockhash),
            instructions=[instruction_to_dict(ix_) for ix_ in ixs],
            raw_amount=raw_amount,
        )

    def submit_signed(self, signed_tx_b64: str) -> str:
        sig = self.sender.submit_signed(base64.b64decode(signed_tx_b64))
        # The signed bytes are opaque here; drop every cached record.
        self.reader.invalidate()
        return sig
