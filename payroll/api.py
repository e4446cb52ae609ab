"""HTTP API for payroll uploads, the transaction log and wallet authentication."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import AuthController
from .disbursement import DisbursementEngine
from .errors import InvalidToken, PayrollError, PayrollValidationError
from .ledger import TransactionLedger
from .tokens import SessionClaims, SessionIssuer
from .wallets import isoformat

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 64 * 1024
SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; img-src 'self' data: https:"
    ),
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Referrer-Policy": "no-referrer",
}


class RateLimiter:
    """Simple sliding-window rate limiter.

    Clients with no events inside the window are dropped once per window so the
    table only holds recently active keys.
    """

    def __init__(self, max_calls: int, window_seconds: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _sweep(self, cutoff: float) -> None:
        stale = [key for key, queue in self._events.items() if not queue or queue[-1] < cutoff]
        for key in stale:
            del self._events[key]

    def allow(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            queue = self._events.setdefault(key, deque())
            while queue and queue[0] < cutoff:
                queue.popleft()
            if len(queue) >= self.max_calls:
                return False
            queue.append(now)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class ChallengePayload(BaseModel):
    walletAddress: str = Field(default="", max_length=64)


class ChallengeResponse(BaseModel):
    challenge: str
    expiresIn: int


class VerifyPayload(BaseModel):
    walletAddress: str = Field(default="", max_length=64)
    signature: str = Field(default="", max_length=256)
    challenge: Optional[str] = Field(default=None, max_length=1024)


class VerifyResponse(BaseModel):
    token: str
    walletAddress: str
    expiresIn: int


class SessionResponse(BaseModel):
    walletAddress: str
    issuedAt: str
    expiresAt: str


class TransactionModel(BaseModel):
    recordId: str
    walletAddress: str
    amount: str
    status: str
    providerTransactionId: Optional[str] = None
    errorKind: Optional[str] = None
    errorReason: Optional[str] = None
    createdAt: str
    sourceFileName: str
    batchId: Optional[str] = None


class TransactionsResponse(BaseModel):
    transactions: List[TransactionModel]


class EntryResultModel(BaseModel):
    walletAddress: str
    amount: str
    status: str
    recordId: Optional[str] = None
    transactionId: Optional[str] = None
    errorKind: Optional[str] = None
    error: Optional[str] = None


class BatchResponse(BaseModel):
    message: str
    batchId: str
    sourceFileName: str
    totalEntries: int
    successful: int
    failed: int
    results: List[EntryResultModel]


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization") or ""
    if auth_header.lower().startswith("bearer "):
        candidate = auth_header.split(" ", 1)[1].strip()
        if candidate:
            return candidate
    return None


def create_app(
    engine: DisbursementEngine,
    ledger: TransactionLedger,
    auth: AuthController,
    sessions: SessionIssuer,
    settings: Any,
) -> FastAPI:
    version = str(getattr(settings, "api_version", "1.0.0"))
    app = FastAPI(title="Crypto Payroll", version=version)
    started = time.monotonic()

    upload_max_bytes = int(getattr(settings, "upload_max_bytes", 10 * 1024 * 1024))
    require_auth = bool(getattr(settings, "require_auth", False))
    limiter = RateLimiter(
        max_calls=int(getattr(settings, "rate_limit_max_requests", 100)),
        window_seconds=int(getattr(settings, "rate_limit_window_seconds", 15 * 60)),
    )

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(getattr(settings, "allowed_origins", ["http://localhost:3000"])),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.url.path != "/health":
            client = request.client.host if request.client else "unknown"
            if not limiter.allow(client):
                return JSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={"detail": "Too many requests from this IP, please try again later."},
                )
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    async def require_session(request: Request) -> Optional[SessionClaims]:
        if not require_auth:
            return None
        return await run_in_threadpool(sessions.verify, _bearer_token(request))

    @app.exception_handler(PayrollError)
    async def payroll_error_handler(_: Request, exc: PayrollError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error: %s", type(exc).__name__, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": isoformat(datetime.now(timezone.utc)),
            "uptime": round(time.monotonic() - started, 3),
            "version": version,
        }

    @app.post("/api/payroll/upload", response_model=BatchResponse)
    async def upload_payroll(
        payrollFile: Optional[UploadFile] = File(default=None),
        _: Any = Depends(require_session),
    ) -> BatchResponse:
        if payrollFile is None:
            raise PayrollValidationError("No file uploaded")

        chunks: List[bytes] = []
        size = 0
        while True:
            chunk = await payrollFile.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            size += len(chunk)
            if size > upload_max_bytes:
                raise PayrollValidationError("Payroll file too large", status_code=413)
            chunks.append(chunk)
        data = b"".join(chunks)
        if not data:
            raise PayrollValidationError("Payroll file is empty")

        file_name = payrollFile.filename or "payroll"
        logger.info("Received payroll file: %s (%s bytes)", file_name, size)
        result = await run_in_threadpool(engine.process_batch, data, file_name)
        return BatchResponse(message="Payroll processing completed", **result.to_dict())

    @app.get("/api/transactions", response_model=TransactionsResponse)
    async def list_transactions(
        prefix: Optional[str] = Query(default=None, max_length=128),
        walletAddress: Optional[str] = Query(default=None, max_length=64),
        limit: int = Query(default=100, ge=1, le=1000),
        _: Any = Depends(require_session),
    ) -> TransactionsResponse:
        if prefix and (".." in prefix or prefix.startswith("/")):
            raise PayrollValidationError("Invalid prefix")
        records = await run_in_threadpool(ledger.list, prefix, limit, walletAddress)
        records.sort(key=lambda record: record.created_at, reverse=True)
        return TransactionsResponse(transactions=[TransactionModel(**record.to_dict()) for record in records])

    @app.post("/api/auth/challenge", response_model=ChallengeResponse)
    async def issue_challenge(payload: ChallengePayload) -> ChallengeResponse:
        challenge = auth.request_challenge(payload.walletAddress)
        return ChallengeResponse(
            challenge=challenge.message,
            expiresIn=challenge.expires_in(challenge.issued_at),
        )

    @app.post("/api/auth/verify", response_model=VerifyResponse)
    async def verify_signature(payload: VerifyPayload) -> VerifyResponse:
        grant = await run_in_threadpool(
            auth.verify,
            payload.walletAddress,
            payload.signature,
            payload.challenge,
        )
        return VerifyResponse(token=grant.token, walletAddress=grant.wallet_address, expiresIn=grant.expires_in)

    @app.get("/api/auth/session", response_model=SessionResponse)
    async def current_session(request: Request) -> SessionResponse:
        token = _bearer_token(request)
        if not token:
            raise InvalidToken()
        claims = await run_in_threadpool(sessions.verify, token)
        return SessionResponse(
            walletAddress=claims.wallet_address,
            issuedAt=isoformat(claims.issued_at),
            expiresAt=isoformat(claims.expires_at),
        )

    return app


def run_api(app: FastAPI, settings: Any) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=str(settings.log_level).lower(),
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["create_app", "run_api"]
