"""
Data models for the ledger gateway.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class VerificationResult(BaseModel):
    """Outcome of looking a document hash up on the ledger."""
    model_config = ConfigDict(frozen=True)

    verified: bool
    transaction_id: Optional[str] = None
    timestamp: Optional[int] = None


class TransactionRecord(BaseModel):
    """One ledger transaction whose memo references a document hash."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    timestamp: int
    memo: str
    ledger_sequence: Optional[int] = None


class TransferRecord(BaseModel):
    """An anchored ownership transfer of a document."""
    model_config = ConfigDict(frozen=True)

    transfer_hash: str
    transaction_id: str
    from_owner: str
    to_owner: str
    timestamp: int


class LedgerAccount(BaseModel):
    """Subset of a ledger account used to build submissions."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    sequence: int


class RevocationResult(BaseModel):
    """Result of a revocation submission."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    revoked_at: int


# Request / response models

class VerifyRequest(BaseModel):
    """Request model for a single verification."""
    document_hash: str = Field(..., description="Document hash (hex)")


class VerifyResponse(BaseModel):
    """Response model for a verification."""
    verified: bool
    transaction_id: Optional[str] = None
    timestamp: Optional[int] = None
    cached: bool = False

    @classmethod
    def from_result(cls, result: VerificationResult, cached: bool) -> "VerifyResponse":
        return cls(
            verified=result.verified,
            transaction_id=result.transaction_id,
            timestamp=result.timestamp,
            cached=cached
        )


class BatchVerifyRequest(BaseModel):
    """Request model for batch verification."""
    hashes: List[str] = Field(default_factory=list, description="Document hashes")


class BatchVerifyItem(BaseModel):
    """Per-hash entry of a batch verification."""
    document_hash: str
    result: Optional[VerifyResponse] = None
    error: Optional[str] = None


class BatchVerifyResponse(BaseModel):
    results: List[BatchVerifyItem]


class HistoryResponse(BaseModel):
    document_hash: str
    transactions: List[TransactionRecord]


class SubmitRequest(BaseModel):
    document_hash: str


class SubmitResponse(BaseModel):
    document_hash: str
    transaction_id: str


class RevokeRequest(BaseModel):
    """Request model for revoking a document hash."""
    document_hash: str
    reason: str = Field(..., min_length=1)
    revoked_by: str = Field(..., min_length=1)


class TransferRequest(BaseModel):
    """Request model for an ownership transfer."""
    document_hash: str
    from_owner: str = Field(..., min_length=1)
    to_owner: str = Field(..., min_length=1)


class TransferHistoryResponse(BaseModel):
    document_hash: str
    transfers: List[TransferRecord]


class HealthResponse(BaseModel):
    status: str
    ledger_connected: bool
    cache_connected: bool
    ledger_circuit: str
