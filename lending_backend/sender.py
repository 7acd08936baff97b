from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException, TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .errors import (
    InstructionRejectedError,
    TransactionExpiredError,
    TransportError,
    parse_instruction_error,
    transport_errors,
)
from .tx_builder import compile_message

logger = logging.getLogger("lending.sender")

_EXPIRED_MARKERS = ("BlockhashNotFound", "Blockhash not found")


class _BlockhashExpired(Exception):
    pass


def extract_sig(resp) -> Signature:
    value = getattr(resp, "value", resp)
    if isinstance(value, Signature):
        return value
    if isinstance(value, dict):
        value = value.get("result") or value.get("value")
    return Signature.from_string(str(value))


def _rejection_from_rpc_exception(exc: RPCException) -> Exception:
    payload = exc.args[0] if exc.args else exc
    data = getattr(payload, "data", None)
    err = getattr(data, "err", None)
    logs = getattr(data, "logs", None) or []
    text = str(err if err is not None else payload)
    if any(marker in text for marker in _EXPIRED_MARKERS):
        return _BlockhashExpired(text)
    index, code = parse_instruction_error(err if err is not None else text)
    return InstructionRejectedError(code, instruction_index=index, logs=logs, raw=payload)


class TransactionSender:
    """
    Signs, submits and confirms transactions at `confirmed` commitment.

    A transaction whose blockhash ages out before confirmation is rebuilt with a
    fresh blockhash and resubmitted once; program rejections are never retried.
    """

    def __init__(
        self,
        client,
        sleep_seconds: float = 0.5,
        max_blockhash_retries: int = 1,
    ):
        self.client = client
        self.sleep_seconds = sleep_seconds
        self.max_blockhash_retries = max_blockhash_retries

    def latest_blockhash(self) -> Tuple[Hash, Optional[int]]:
        for attempt in (1, 2):
            try:
                with transport_errors("get_latest_blockhash"):
                    resp = self.client.get_latest_blockhash(commitment=Confirmed)
                return resp.value.blockhash, getattr(resp.value, "last_valid_block_height", None)
            except TransportError:
                if attempt == 2:
                    raise
                logger.warning("blockhash_fetch_retry attempt=%s", attempt)
        raise AssertionError("unreachable")

    def _send_raw(self, raw: bytes) -> Signature:
        opts = TxOpts(skip_confirmation=True, skip_preflight=False, preflight_commitment=Confirmed)
        for attempt in (1, 2):
            try:
                with transport_errors("send_raw_transaction"):
                    return extract_sig(self.client.send_raw_transaction(raw, opts=opts))
            except RPCException as exc:
                raise _rejection_from_rpc_exception(exc) from exc
            except TransportError:
                # Same signed bytes: the cluster deduplicates by signature.
                if attempt == 2:
                    raise
                logger.warning("send_retry attempt=%s", attempt)
        raise AssertionError("unreachable")

    def _confirm(self, sig: Signature, last_valid_block_height: Optional[int]) -> None:
        try:
            with transport_errors(f"confirm_transaction {sig}"):
                resp = self.client.confirm_transaction(
                    sig,
                    commitment=Confirmed,
                    sleep_seconds=self.sleep_seconds,
                    last_valid_block_height=last_valid_block_height,
                )
        except (TransactionExpiredBlockheightExceededError, UnconfirmedTxError) as exc:
            raise _BlockhashExpired(str(exc)) from exc
        statuses = getattr(resp, "value", None) or []
        status = statuses[0] if statuses else None
        err = getattr(status, "err", None) if status is not None else None
        if err is not None:
            index, code = parse_instruction_error(err)
            raise InstructionRejectedError(code, instruction_index=index, raw=err)

    def submit(
        self,
        instructions: List[Instruction],
        fee_payer: Keypair,
        signers: Sequence[Keypair] = (),
    ) -> str:
        payer_pubkey: Pubkey = fee_payer.pubkey()
        keypairs = [fee_payer] + [kp for kp in signers if kp.pubkey() != payer_pubkey]
        attempts = 0
        sig: Optional[Signature] = None
        while True:
            attempts += 1
            blockhash, last_valid = self.latest_blockhash()
            message = compile_message(instructions, payer_pubkey, blockhash)
            tx = VersionedTransaction(message, keypairs)
            try:
                sig = self._send_raw(bytes(tx))
                self._confirm(sig, last_valid)
            except _BlockhashExpired as exc:
                if attempts > self.max_blockhash_retries:
                    raise TransactionExpiredError(sig, attempts) from exc
                logger.warning("blockhash_expired_resubmit sig=%s attempt=%s", sig, attempts)
                continue
            except InstructionRejectedError as exc:
                logger.warning("tx_rejected payer=%s error=%s code=%s", payer_pubkey, exc.name, exc.code)
                raise
            logger.info("tx_confirmed sig=%s payer=%s attempts=%s", sig, payer_pubkey, attempts)
            return str(sig)

    def submit_signed(self, raw: bytes) -> str:
        """Submit bytes signed elsewhere (browser wallet); expiry cannot be retried without re-signing."""
        sig = None
        try:
            sig = self._send_raw(raw)
            self._confirm(sig, None)
        except _BlockhashExpired as exc:
            raise TransactionExpiredError(sig, 1) from exc
        logger.info("signed_tx_confirmed sig=%s", sig)
        return str(sig)

    def airdrop(self, address: Pubkey, lamports: int) -> str:
        with transport_errors(f"request_airdrop {address}"):
            sig = extract_sig(self.client.request_airdrop(address, lamports, commitment=Confirmed))
        try:
            self._confirm(sig, None)
        except _BlockhashExpired as exc:
            raise TransactionExpiredError(sig, 1) from exc
        logger.info("airdrop_confirmed address=%s lamports=%s sig=%s", address, lamports, sig)
        return str(sig)
