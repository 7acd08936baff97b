import base64
import hashlib
import os
from decimal import ROUND_DOWN, Decimal
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from borsh_construct import CStruct, Enum, U64
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, create_account
from spl.token.instructions import (
    InitializeMintParams,
    MintToParams,
    create_associated_token_account,
    get_associated_token_address,
    initialize_mint,
    mint_to,
)

from .errors import InvalidSeedError
from .settings import DEFAULT_PROGRAM_ID, parse_pubkey


def load_pubkey(env_name: str, default: str) -> Pubkey:
    return parse_pubkey(env_name, os.environ.get(env_name) or default)


PROGRAM_ID = load_pubkey("PROGRAM_ID", DEFAULT_PROGRAM_ID)
SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

TREASURY_SEED = b"Treasury"
MAX_SEED_LEN = 32
MAX_SEEDS = 16
MINT_LEN = 82

TOKEN_DECIMALS = {"SOL": 9, "USDC": 6}

# Variant order follows the program's TokenType declaration; the tag is the borsh u8 index.
TOKEN_TYPE_ORDER = ("USDC", "SOL")
TokenTypeLayout = Enum(*(name / CStruct() for name in TOKEN_TYPE_ORDER), enum_name="TokenType")
InitializeBankLayout = CStruct(
    "liquidation_threshold" / U64,
    "max_ltv" / U64,
)
AmountLayout = CStruct(
    "amount" / U64,
    "token_type" / TokenTypeLayout,
)
LiquidateLayout = CStruct("token_type" / TokenTypeLayout)


class AccountSlot(NamedTuple):
    name: str
    is_signer: bool
    is_writable: bool


def _slot(name: str, signer: bool = False, writable: bool = False) -> AccountSlot:
    return AccountSlot(name, signer, writable)


_TOKEN_MOVE_ACCOUNTS = (
    _slot("signer", signer=True, writable=True),
    _slot("mint"),
    _slot("bank", writable=True),
    _slot("bank_token_account", writable=True),
    _slot("user_account", writable=True),
    _slot("user_token_account", writable=True),
    _slot("associated_token_program"),
    _slot("token_program"),
    _slot("system_program"),
)

# Account order and flags for every instruction of the lending program, keyed by
# instruction name. Positions must match the program's `#[derive(Accounts)]` structs.
ACCOUNT_SCHEMAS: Dict[str, Tuple[AccountSlot, ...]] = {
    "initialize_bank": (
        _slot("signer", signer=True, writable=True),
        _slot("mint"),
        _slot("bank", writable=True),
        _slot("bank_token_account", writable=True),
        _slot("token_program"),
        _slot("system_program"),
    ),
    "initialize_account": (
        _slot("signer", signer=True, writable=True),
        _slot("user_account", writable=True),
        _slot("system_program"),
    ),
    "deposit": _TOKEN_MOVE_ACCOUNTS,
    "withdraw": _TOKEN_MOVE_ACCOUNTS,
    "repay": _TOKEN_MOVE_ACCOUNTS,
    "borrow": _TOKEN_MOVE_ACCOUNTS[:6] + (_slot("price_update"),) + _TOKEN_MOVE_ACCOUNTS[6:],
    "liquidate": (
        _slot("liquidator", signer=True, writable=True),
        _slot("price_update_account", writable=True),
        _slot("collateral_mint"),
        _slot("borrowed_mint"),
        _slot("collateral_bank", writable=True),
        _slot("collateral_bank_token_account", writable=True),
        _slot("borrowed_bank", writable=True),
        _slot("borrowed_bank_token_account", writable=True),
        _slot("liquidator_user_account", writable=True),
        _slot("liquidator_borrowed_token_account", writable=True),
        _slot("liquidator_collateral_token_account", writable=True),
        _slot("system_program"),
        _slot("token_program"),
        _slot("associated_token_program"),
    ),
}

FIXED_PROGRAM_ACCOUNTS = {
    "system_program": SYS_PROGRAM_ID,
    "token_program": TOKEN_PROGRAM_ID,
    "associated_token_program": ASSOCIATED_TOKEN_PROGRAM_ID,
}


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def to_pubkey(value: Union[str, Pubkey]) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


def _seed_bytes(seed: Union[bytes, str, Pubkey]) -> bytes:
    if isinstance(seed, Pubkey):
        return bytes(seed)
    if isinstance(seed, str):
        return seed.encode()
    return bytes(seed)


def find_pda(seeds: Sequence[Union[bytes, str, Pubkey]], program_id: Pubkey = PROGRAM_ID) -> Tuple[Pubkey, int]:
    """Derive a program address and its bump seed, validating the runtime seed limits first."""
    raw = [_seed_bytes(seed) for seed in seeds]
    if len(raw) >= MAX_SEEDS:
        # The runtime appends the bump as one more seed.
        raise InvalidSeedError(f"too many seeds: {len(raw)} (max {MAX_SEEDS - 1})")
    for idx, seed in enumerate(raw):
        if len(seed) > MAX_SEED_LEN:
            raise InvalidSeedError(f"seed {idx} is {len(seed)} bytes (max {MAX_SEED_LEN})")
    return Pubkey.find_program_address(raw, program_id)


def bank_pda(mint: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return find_pda([mint], program_id)[0]


def treasury_pda(mint: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return find_pda([TREASURY_SEED, mint], program_id)[0]


def user_account_pda(wallet: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return find_pda([wallet], program_id)[0]


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, mint)


def normalize_token(token: str) -> str:
    key = token.strip().upper()
    if key not in TOKEN_DECIMALS:
        raise ValueError(f"Unsupported token {token}")
    return key


def to_base_units(amount: Union[int, float, str, Decimal], token: str) -> int:
    """Convert a display amount (1.5 SOL) to the integer smallest-unit amount the program expects."""
    decimals = TOKEN_DECIMALS[normalize_token(token)]
    value = Decimal(str(amount))
    if value < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}")
    return int((value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def from_base_units(raw: int, token: str) -> Decimal:
    decimals = TOKEN_DECIMALS[normalize_token(token)]
    return Decimal(raw) / (Decimal(10) ** decimals)


def token_type_from_tag(tag: int) -> str:
    return TOKEN_TYPE_ORDER[tag]


def encode_token_type(token: str):
    if normalize_token(token) == "SOL":
        return TokenTypeLayout.enum.SOL()
    return TokenTypeLayout.enum.USDC()


def encode_initialize_bank(liquidation_threshold: int, max_ltv: int) -> bytes:
    data = InitializeBankLayout.build({"liquidation_threshold": liquidation_threshold, "max_ltv": max_ltv})
    return sighash("initialize_bank") + data


def encode_initialize_account() -> bytes:
    return sighash("initialize_account")


def encode_amount_instruction(name: str, amount: int, token: str) -> bytes:
    if amount < 0 or amount >= 2**64:
        raise ValueError(f"Amount {amount} does not fit in u64")
    data = AmountLayout.build({"amount": amount, "token_type": encode_token_type(token)})
    return sighash(name) + data


def encode_liquidate(token: str) -> bytes:
    return sighash("liquidate") + LiquidateLayout.build({"token_type": encode_token_type(token)})


def build_accounts(name: str, accounts: Dict[str, Pubkey]) -> List[AccountMeta]:
    """Lay out account metas for `name` strictly from its schema; every slot must be supplied."""
    schema = ACCOUNT_SCHEMAS[name]
    resolved = dict(FIXED_PROGRAM_ACCOUNTS)
    resolved.update(accounts)
    expected = {slot.name for slot in schema}
    missing = [slot.name for slot in schema if slot.name not in resolved]
    if missing:
        raise ValueError(f"{name}: missing accounts {missing}")
    unknown = sorted(set(accounts) - expected)
    if unknown:
        raise ValueError(f"{name}: unexpected accounts {unknown}")
    return [
        AccountMeta(pubkey=resolved[slot.name], is_signer=slot.is_signer, is_writable=slot.is_writable)
        for slot in schema
    ]


def account_address(ix: Instruction, name: str, slot: str) -> Pubkey:
    """Look up a named account of a built `name` instruction by its schema position."""
    for idx, entry in enumerate(ACCOUNT_SCHEMAS[name]):
        if entry.name == slot:
            return ix.accounts[idx].pubkey
    raise KeyError(f"{name} has no account named {slot}")


def build_initialize_bank_ix(
    signer: Pubkey,
    mint: Pubkey,
    liquidation_threshold: int,
    max_ltv: int,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    accounts = build_accounts(
        "initialize_bank",
        {
            "signer": signer,
            "mint": mint,
            "bank": bank_pda(mint, program_id),
            "bank_token_account": treasury_pda(mint, program_id),
        },
    )
    return Instruction(program_id, encode_initialize_bank(liquidation_threshold, max_ltv), accounts)


def build_initialize_account_ix(signer: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    accounts = build_accounts(
        "initialize_account",
        {"signer": signer, "user_account": user_account_pda(signer, program_id)},
    )
    return Instruction(program_id, encode_initialize_account(), accounts)


def _token_move_ix(
    name: str,
    signer: Pubkey,
    mint: Pubkey,
    amount: int,
    token: str,
    user_token_account: Optional[Pubkey],
    program_id: Pubkey,
    extra: Optional[Dict[str, Pubkey]] = None,
) -> Instruction:
    accounts = {
        "signer": signer,
        "mint": mint,
        "bank": bank_pda(mint, program_id),
        "bank_token_account": treasury_pda(mint, program_id),
        "user_account": user_account_pda(signer, program_id),
        "user_token_account": user_token_account or associated_token_address(signer, mint),
    }
    accounts.update(extra or {})
    return Instruction(program_id, encode_amount_instruction(name, amount, token), build_accounts(name, accounts))


def build_deposit_ix(
    signer: Pubkey,
    mint: Pubkey,
    amount: int,
    token: str,
    user_token_account: Optional[Pubkey] = None,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    return _token_move_ix("deposit", signer, mint, amount, token, user_token_account, program_id)


def build_withdraw_ix(
    signer: Pubkey,
    mint: Pubkey,
    amount: int,
    token: str,
    user_token_account: Optional[Pubkey] = None,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    return _token_move_ix("withdraw", signer, mint, amount, token, user_token_account, program_id)


def build_repay_ix(
    signer: Pubkey,
    mint: Pubkey,
    amount: int,
    token: str,
    user_token_account: Optional[Pubkey] = None,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    return _token_move_ix("repay", signer, mint, amount, token, user_token_account, program_id)


def build_borrow_ix(
    signer: Pubkey,
    mint: Pubkey,
    amount: int,
    token: str,
    price_update: Pubkey,
    user_token_account: Optional[Pubkey] = None,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    # Borrowed tokens land in the ATA owned by the user-account PDA, not the wallet.
    if user_token_account is None:
        user_token_account = associated_token_address(user_account_pda(signer, program_id), mint)
    return _token_move_ix(
        "borrow",
        signer,
        mint,
        amount,
        token,
        user_token_account,
        program_id,
        extra={"price_update": price_update},
    )


def build_liquidate_ix(
    liquidator: Pubkey,
    price_update: Pubkey,
    collateral_mint: Pubkey,
    borrowed_mint: Pubkey,
    liquidator_user_account: Pubkey,
    token: str,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    accounts = build_accounts(
        "liquidate",
        {
            "liquidator": liquidator,
            "price_update_account": price_update,
            "collateral_mint": collateral_mint,
            "borrowed_mint": borrowed_mint,
            "collateral_bank": bank_pda(collateral_mint, program_id),
            "collateral_bank_token_account": treasury_pda(collateral_mint, program_id),
            "borrowed_bank": bank_pda(borrowed_mint, program_id),
            "borrowed_bank_token_account": treasury_pda(borrowed_mint, program_id),
            "liquidator_user_account": liquidator_user_account,
            "liquidator_borrowed_token_account": associated_token_address(liquidator_user_account, borrowed_mint),
            "liquidator_collateral_token_account": associated_token_address(liquidator_user_account, collateral_mint),
        },
    )
    return Instruction(program_id, encode_liquidate(token), accounts)


def build_create_mint_ixs(
    payer: Pubkey,
    mint: Pubkey,
    decimals: int,
    mint_authority: Pubkey,
    rent_lamports: int,
) -> List[Instruction]:
    return [
        create_account(
            CreateAccountParams(
                from_pubkey=payer,
                to_pubkey=mint,
                lamports=rent_lamports,
                space=MINT_LEN,
                owner=TOKEN_PROGRAM_ID,
            )
        ),
        initialize_mint(
            InitializeMintParams(
                decimals=decimals,
                program_id=TOKEN_PROGRAM_ID,
                mint=mint,
                mint_authority=mint_authority,
                freeze_authority=None,
            )
        ),
    ]


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    return create_associated_token_account(payer=payer, owner=owner, mint=mint)


def build_mint_to_ix(mint: Pubkey, dest: Pubkey, mint_authority: Pubkey, amount: int) -> Instruction:
    return mint_to(
        MintToParams(
            program_id=TOKEN_PROGRAM_ID,
            mint=mint,
            dest=dest,
            mint_authority=mint_authority,
            amount=amount,
        )
    )


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(ix.data).decode(),
    }


def compile_message(ixs: List[Instruction], payer: Pubkey, blockhash: Union[str, Hash]) -> MessageV0:
    if isinstance(blockhash, str):
        blockhash = Hash.from_string(blockhash)
    return MessageV0.try_compile(payer, ixs, [], blockhash)


def message_from_instructions(ixs: List[Instruction], payer: Pubkey, blockhash: Union[str, Hash]) -> str:
    return base64.b64encode(bytes(compile_message(ixs, payer, blockhash))).decode()
