"""
FastAPI server for the trip-match service.

Endpoints:
- GET  /health - Liveness and index size
- POST /trips/query - Pre-filter candidates on public metadata
- GET  /matches/{match_id} - Read a match record
- POST /matches/{match_id}/accept - Record one party's consent
- POST /matches/{match_id}/reject - Decline a pending match
- POST /matches/{match_id}/reveal - Deposit trip detail sealed to the counterparty
- GET  /matches/{match_id}/reveal - Collect the counterparty's sealed detail
"""
import base64
import logging
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tripmatch import __version__
from tripmatch.config import Settings
from tripmatch.server.index import (
    DEFAULT_LIMIT,
    InMemoryPrefilterIndex,
    PrefilterIndex,
    index_from_settings,
)
from tripmatch.server.ledger import Ledger
from tripmatch.server.lifecycle import MatchLifecycle
from tripmatch.shared.errors import (
    InvalidGeometry,
    InvalidTransition,
    MatchNotFound,
    NotMutual,
    PrefilterUnavailable,
    RecordArchived,
    RevealNotReady,
    TripMatchError,
    TripNotActive,
    Unauthorized,
)
from tripmatch.shared.geo import cell_from_hex
from tripmatch.shared.protocol import MatchRecord, SealedPayload

logger = logging.getLogger(__name__)


# Pydantic models for API
class TripQueryRequest(BaseModel):
    """Pre-filter query over public trip metadata."""
    destination_cell: str = Field(..., description="H3 cell, hex string")
    start_date: int
    end_date: int
    exclude_owners: List[str] = Field(default_factory=list)
    limit: int = Field(DEFAULT_LIMIT, ge=1)


class CandidateModel(BaseModel):
    trip_id: str
    owner: str
    destination_cell: str
    start_date: int
    end_date: int
    is_active: bool
    created_at: int


class TripQueryResponse(BaseModel):
    candidates: List[CandidateModel]
    count: int


class ScoresModel(BaseModel):
    route_score: int
    date_score: int
    interest_score: int
    total_score: int


class MatchResponse(BaseModel):
    """A match record as seen by either party."""
    match_id: str
    trip_a: str
    trip_b: str
    party_a: str
    party_b: str
    scores: ScoresModel
    computation_id: str
    created_at: int
    expires_at: int
    status: str
    accepted_a: bool
    accepted_b: bool


class ConsentRequest(BaseModel):
    party_id: str


class SealedPayloadModel(BaseModel):
    """Sealed reveal payload; binary fields are base64."""
    ephemeral_public_key_b64: str
    nonce_b64: str
    ciphertext_b64: str


class DepositRequest(BaseModel):
    party_id: str
    sealed: SealedPayloadModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    indexed_trips: Optional[int] = None
    match_records: int


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _match_response(record: MatchRecord) -> MatchResponse:
    return MatchResponse(**record.to_dict())


def _error_status(exc: TripMatchError) -> int:
    if isinstance(exc, MatchNotFound):
        return 404
    if isinstance(exc, Unauthorized):
        return 403
    if isinstance(exc, (InvalidTransition, NotMutual, RevealNotReady, TripNotActive)):
        return 409
    if isinstance(exc, RecordArchived):
        return 423
    if isinstance(exc, PrefilterUnavailable):
        return 503
    if isinstance(exc, InvalidGeometry):
        return 400
    return 500


def create_app(index: PrefilterIndex, lifecycle: MatchLifecycle) -> FastAPI:
    """
    Create and configure the FastAPI app.

    Args:
        index: Pre-filter served on /trips/query
        lifecycle: Lifecycle behind the /matches routes

    Returns:
        A new FastAPI application; nothing is shared between apps
    """
    app = FastAPI(
        title="tripmatch",
        description="Privacy-preserving travel companion matching API",
        version=__version__,
    )
    app.state.index = index
    app.state.lifecycle = lifecycle

    @app.exception_handler(TripMatchError)
    async def tripmatch_error_handler(request: Request, exc: TripMatchError):
        status = _error_status(exc)
        if status >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy" if index.health() else "degraded",
            version=__version__,
            indexed_trips=getattr(index, "ntotal", None),
            match_records=len(lifecycle.ledger.matches),
        )

    @app.post("/trips/query", response_model=TripQueryResponse)
    def query_trips(request: TripQueryRequest):
        """
        Stage 1: pre-filter candidate retrieval.

        Public metadata only; no payload ever passes through here.
        """
        candidates = index.query(
            cell_from_hex(request.destination_cell),
            (request.start_date, request.end_date),
            request.exclude_owners,
            request.limit,
        )
        return TripQueryResponse(
            candidates=[CandidateModel(**c.to_dict()) for c in candidates],
            count=len(candidates),
        )

    @app.get("/matches/{match_id}", response_model=MatchResponse)
    def get_match(match_id: str):
        return _match_response(lifecycle.get(match_id))

    @app.post("/matches/{match_id}/accept", response_model=MatchResponse)
    def accept_match(match_id: str, request: ConsentRequest):
        return _match_response(lifecycle.accept(match_id, request.party_id))

    @app.post("/matches/{match_id}/reject", response_model=MatchResponse)
    def reject_match(match_id: str, request: ConsentRequest):
        return _match_response(lifecycle.reject(match_id, request.party_id))

    @app.post("/matches/{match_id}/reveal")
    def deposit_reveal(match_id: str, request: DepositRequest):
        # binascii.Error is a ValueError, so bad base64 answers 400
        sealed = SealedPayload(
            ephemeral_public_key=base64.b64decode(request.sealed.ephemeral_public_key_b64, validate=True),
            nonce=base64.b64decode(request.sealed.nonce_b64, validate=True),
            ciphertext=base64.b64decode(request.sealed.ciphertext_b64, validate=True),
        )
        lifecycle.deposit_reveal(match_id, request.party_id, sealed)
        return {"status": "deposited", "match_id": match_id}

    @app.get("/matches/{match_id}/reveal", response_model=SealedPayloadModel)
    def collect_reveal(match_id: str, party_id: str):
        sealed = lifecycle.reveal(match_id, party_id)
        return SealedPayloadModel(
            ephemeral_public_key_b64=_b64(sealed.ephemeral_public_key),
            nonce_b64=_b64(sealed.nonce),
            ciphertext_b64=_b64(sealed.ciphertext),
        )

    return app


def run_server(settings: Optional[Settings] = None):
    """Run a standalone server over the configured index and an in-memory ledger."""
    import uvicorn

    settings = settings or Settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    index = index_from_settings(settings)
    # only a local index is fed by ledger listings
    local = index if isinstance(index, InMemoryPrefilterIndex) else None
    lifecycle = MatchLifecycle(Ledger(index=local))
    uvicorn.run(create_app(index, lifecycle), host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run_server()
