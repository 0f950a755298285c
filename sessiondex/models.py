"""Pydantic models for session records, chains, settings and quota payloads."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional, Generic, TypeVar

T = TypeVar("T")

class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int
# ── Session-related models ──────────────────────────────────────────

class SessionRecord(BaseModel):
    """Metadata extracted from one transcript file, as written to the store."""
    sessionId: str
    projectName: str = ""
    projectPath: str
    filePath: str
    fileName: str = ""
    fileSize: int = 0
    fileModifiedTime: int = 0  # milliseconds since epoch
    contentHash: str = ""
    messageCount: int = 0
    userMessageCount: int = 0
    assistantMessageCount: int = 0
    firstMessageTime: Optional[str] = None
    lastMessageTime: Optional[str] = None
    sessionDurationSeconds: int = 0
    isValid: bool = True
    isEmpty: bool = False


class SessionAnalysis(BaseModel):
    title: str = ""
    summary: str = ""
    model: str = ""
    analyzedAt: int = 0  # unix seconds
    messagesAnalyzed: int = 0
    durationMs: int = 0


class SessionSummary(BaseModel):
    """Read-side view of a session; analysis fields are set only when the cache entry is valid."""
    sessionId: str
    projectName: str = ""
    projectPath: str = ""
    filePath: str = ""
    fileName: str = ""
    fileSize: int = 0
    fileModifiedTime: int = 0
    messageCount: int = 0
    firstMessageTime: Optional[str] = None
    lastMessageTime: Optional[str] = None
    sessionDurationSeconds: int = 0
    isAnalyzed: bool = False
    isValid: bool = True
    analysis: Optional[SessionAnalysis] = None
    analysisStale: bool = False
    parentSessionId: Optional[str] = None
    continuationOrder: Optional[int] = None
    isActiveContinuation: Optional[bool] = None
    continuationCount: Optional[int] = None
    rank: Optional[float] = None


class ProjectSummary(BaseModel):
    projectPath: str
    projectName: str = ""
    sessionCount: int = 0
    mostRecent: Optional[str] = None


# ── Continuation chains ─────────────────────────────────────────────

class ContinuationNode(BaseModel):
    sessionId: str
    parentSessionId: Optional[str] = None
    order: int = 0
    depth: int = 0
    isActive: bool = False
    childStartedTimestamp: Optional[str] = None


class ContinuationChain(BaseModel):
    rootSessionId: str
    activeSessionId: Optional[str] = None
    sessions: list[ContinuationNode] = Field(default_factory=list)
    totalSessions: int = 1
    maxDepth: int = 0
    hasBranches: bool = False
    pendingParentId: Optional[str] = None


# ── Settings and quota ──────────────────────────────────────────────

class IndexerSettings(BaseModel):
    dailyAnalysisLimit: int = Field(20, ge=0)
    autoAnalyzeNewSessions: bool = False
    cacheDurationDays: int = 30
    maxConcurrentAnalyses: int = Field(1, ge=1, le=16)
    analysisTimeout: int = Field(600_000, ge=1_000)  # milliseconds
    maxMessagesForAnalysis: int = Field(20, ge=2, le=200)
    additionalDiscoveryPaths: list[str] = Field(default_factory=list)
    excludePaths: list[str] = Field(default_factory=list)


class QuotaStatus(BaseModel):
    date: str
    used: int
    limit: int
    remaining: int
    allowed: bool
    inFlight: int = 0
    queued: int = 0
    maxConcurrent: int = 1


class QuotaDay(BaseModel):
    date: str
    performed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    cancelled: int = 0
