"""
Decision records and the audit store they are written to.
"""

import csv
import hashlib
import io
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from pydantic import Field

from .models import (
    DocumentType, ExportFormat, FrozenModel, RiskLevel, VerificationStatus, WorkflowStatus,
)

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "verification_id", "created_at", "workflow_status", "verification_status",
    "requires_manual_review", "risk_score", "risk_level", "document_type",
    "masked_name", "masked_document_number", "retry_count", "checksum",
]


class DecisionRecord(FrozenModel):
    """What gets persisted for one terminal workflow run. Holds masked identity only."""
    verification_id: str
    created_at: datetime
    workflow_status: WorkflowStatus
    verification_status: Optional[VerificationStatus] = None
    requires_manual_review: bool = False
    risk_score: Optional[int] = None
    risk_level: Optional[RiskLevel] = None
    document_type: Optional[DocumentType] = None
    masked_name: Optional[str] = None
    masked_document_number: Optional[str] = None
    retry_count: int = 0
    error_codes: List[str] = Field(default_factory=list)
    review_notes: List[str] = Field(default_factory=list)
    checksum: str = ""

    def content_hash(self) -> str:
        payload = self.model_dump(mode="json", exclude={"checksum"})
        return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()

    def sealed(self) -> "DecisionRecord":
        return self.model_copy(update={"checksum": self.content_hash()})

    def verify_checksum(self) -> bool:
        return bool(self.checksum) and self.checksum == self.content_hash()


class AuditFilters(FrozenModel):
    verification_id: Optional[str] = None
    workflow_status: Optional[WorkflowStatus] = None
    risk_level: Optional[RiskLevel] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def accepts(self, record: DecisionRecord) -> bool:
        if self.verification_id and record.verification_id != self.verification_id:
            return False
        if self.workflow_status and record.workflow_status != self.workflow_status:
            return False
        if self.risk_level and record.risk_level != self.risk_level:
            return False
        if self.since and record.created_at < self.since:
            return False
        if self.until and record.created_at > self.until:
            return False
        return True


class AuditStore(ABC):
    """Persistence collaborator for decision history"""

    @abstractmethod
    async def store(self, record: DecisionRecord) -> None:
        pass

    @abstractmethod
    async def retrieve(self, filters: Optional[AuditFilters] = None) -> List[DecisionRecord]:
        pass

    @abstractmethod
    async def export(self, filters: Optional[AuditFilters] = None,
                     format: ExportFormat = ExportFormat.JSON) -> str:
        pass


class InMemoryAuditStore(AuditStore):
    """Keeps records in process memory; no retention policy"""

    def __init__(self):
        self._records: List[DecisionRecord] = []

    async def store(self, record: DecisionRecord) -> None:
        if not record.checksum:
            record = record.sealed()
        self._records.append(record)
        logger.info("Stored decision record %s (%s)", record.verification_id, record.workflow_status.value)

    async def retrieve(self, filters: Optional[AuditFilters] = None) -> List[DecisionRecord]:
        filters = filters or AuditFilters()
        return [r for r in self._records if filters.accepts(r)]

    async def export(self, filters: Optional[AuditFilters] = None,
                     format: ExportFormat = ExportFormat.JSON) -> str:
        records = await self.retrieve(filters)

        if format == ExportFormat.JSON:
            return json.dumps([r.model_dump(mode="json") for r in records], indent=2)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for record in records:
            writer.writerow(record.model_dump(mode="json"))
        return buffer.getvalue()
