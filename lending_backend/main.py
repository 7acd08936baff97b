import logging
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from solana.rpc.api import Client as SolanaClient
from solders.pubkey import Pubkey

from .accounts import LedgerStateReader
from .bank_config import BankConfigStore
from .errors import (
    AccountNotFoundError,
    AddressMismatchError,
    ConfigNotLoadedError,
    InstructionRejectedError,
    LendingClientError,
    TransactionExpiredError,
    TransportError,
)
from .operations import USER_OPERATIONS, LendingOperations
from .sender import TransactionSender
from .settings import Settings, load_deployer_keypair
from .tasks.bootstrap_banks import BankBootstrap
from .tx_builder import from_base_units, normalize_token, to_pubkey

settings = Settings()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("lending")


@dataclass
class Services:
    settings: Settings
    reader: LedgerStateReader
    sender: TransactionSender
    config_store: BankConfigStore
    operations: LendingOperations


def build_services(cfg: Settings, client) -> Services:
    program_id = cfg.program_pubkey()
    reader = LedgerStateReader(client, cluster=cfg.cluster, program_id=program_id, ttl_seconds=cfg.cache_ttl_seconds)
    sender = TransactionSender(client, sleep_seconds=cfg.confirm_sleep_seconds)
    store = BankConfigStore(cfg.banks_config_path, url=cfg.banks_config_url)
    operations = LendingOperations(
        reader,
        sender,
        store,
        program_id=program_id,
        price_update=cfg.optional_pubkey("PRICE_UPDATE_ACCOUNT"),
    )
    return Services(cfg, reader, sender, store, operations)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(settings, SolanaClient(settings.solana_rpc, timeout=settings.rpc_timeout))
    return _services


app = FastAPI(title="Lending Backend")

ERROR_STATUS = {
    InstructionRejectedError: 400,
    AccountNotFoundError: 404,
    ConfigNotLoadedError: 409,
    AddressMismatchError: 500,
    TransportError: 502,
    TransactionExpiredError: 504,
}


@app.exception_handler(LendingClientError)
async def lending_error_handler(request: Request, exc: LendingClientError):
    status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
    body = {"success": False, "error": str(exc), "kind": type(exc).__name__}
    if isinstance(exc, InstructionRejectedError):
        body.update({"code": exc.code, "name": exc.name, "logs": exc.logs})
    logger.warning("request_failed path=%s kind=%s error=%s", request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=status, content=body)


class SetupBanksRequest(BaseModel):
    userWalletAddress: Optional[str] = None


class StepView(BaseModel):
    step: str
    token: Optional[str] = None
    signature: Optional[str] = None
    skipped: bool = False
    detail: Optional[str] = None


class SetupBanksResponse(BaseModel):
    success: bool
    message: str
    config: dict
    steps: List[StepView] = []


class BuildRequest(BaseModel):
    wallet: str
    token: Optional[str] = None
    amount: Optional[float] = None
    price_update: Optional[str] = None


class BuildResponse(BaseModel):
    operation: str
    message_b64: str
    recent_blockhash: str
    instructions: List[dict] = []
    raw_amount: Optional[int] = None


class SubmitRequest(BaseModel):
    signed_tx_b64: str


class BalanceResponse(BaseModel):
    wallet: str
    token: str
    mint: str
    raw_amount: int
    amount: float


def parse_wallet(value: str) -> Pubkey:
    try:
        return to_pubkey(value)
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=f"Invalid wallet: {exc}") from exc


@app.get("/health")
def health():
    return {"status": "ok", "cluster": settings.cluster, "program_id": settings.program_id}


@app.post("/api/setup-banks", response_model=SetupBanksResponse)
def setup_banks(req: SetupBanksRequest, services: Services = Depends(get_services)):
    faucet_wallet = parse_wallet(req.userWalletAddress) if req.userWalletAddress else None
    try:
        deployer = load_deployer_keypair(services.settings)
    except (FileNotFoundError, ValueError) as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    bootstrap = BankBootstrap(
        services.settings,
        services.reader,
        services.sender,
        services.config_store,
        deployer,
        program_id=services.settings.program_pubkey(),
    )
    report = bootstrap.run(faucet_wallet=faucet_wallet)
    return SetupBanksResponse(
        success=True,
        message="Bank setup completed successfully!",
        config=report.config.to_json(),
        steps=[StepView(**step.__dict__) for step in report.steps],
    )


@app.get("/anchor/banks-config.json")
def banks_config(services: Services = Depends(get_services)):
    config = services.config_store.load()
    if config is None:
        raise HTTPException(status_code=404, detail="Banks have not been set up yet")
    return config.to_json()


@app.get("/banks")
def list_banks(services: Services = Depends(get_services)):
    config = services.config_store.load()
    if config is None:
        return []
    banks = []
    for token in ("SOL", "USDC"):
        mint_str = config.mint_address(token)
        if not mint_str:
            continue
        bank = services.reader.fetch_bank_for_mint(Pubkey.from_string(mint_str))
        if bank is None:
            logger.warning("bank_missing token=%s mint=%s", token, mint_str)
            continue
        banks.append({"type": token, "mint": mint_str, **bank.to_dict()})
    return banks


@app.get("/users/{wallet}")
def user_account(wallet: str, services: Services = Depends(get_services)):
    account = services.reader.fetch_user_for_wallet(parse_wallet(wallet))
    return account.to_dict() if account else None


@app.get("/users/{wallet}/balance/{token}", response_model=BalanceResponse)
def token_balance(wallet: str, token: str, services: Services = Depends(get_services)):
    try:
        symbol = normalize_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    owner = parse_wallet(wallet)
    mint = services.config_store.require().mint_for(symbol)
    raw = services.reader.fetch_token_balance(owner, mint)
    return BalanceResponse(
        wallet=str(owner),
        token=symbol,
        mint=str(mint),
        raw_amount=raw,
        amount=float(from_base_units(raw, symbol)),
    )


@app.post("/program/{operation}/build", response_model=BuildResponse)
def build_operation(operation: str, req: BuildRequest, services: Services = Depends(get_services)):
    if operation not in USER_OPERATIONS + ("initialize_account",):
        raise HTTPException(status_code=400, detail=f"Unsupported operation: {operation}")
    if operation != "initialize_account" and (req.token is None or req.amount is None):
        raise HTTPException(status_code=400, detail="token and amount are required")
    try:
        built = services.operations.build_unsigned(
            operation,
            parse_wallet(req.wallet),
            req.token,
            req.amount,
            price_update=req.price_update,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return BuildResponse(**built.__dict__)


@app.post("/program/submit")
def submit_signed(req: SubmitRequest, services: Services = Depends(get_services)):
    return {"signature": services.operations.submit_signed(req.signed_tx_b64)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("lending_backend.main:app", host="0.0.0.0", port=4000, reload=True)
