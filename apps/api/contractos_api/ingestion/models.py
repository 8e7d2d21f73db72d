from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

JobStatus = Literal["queued", "working", "done", "failed"]
DocumentType = Literal["contract", "edp", "memo", "unknown"]


class Job(BaseModel):
    id: str
    project_prefix: str
    storage_path: str
    file_hash: str | None = None
    etag: str | None = None
    contract_id: str | None = None
    document_type: str | None = None
    status: JobStatus = "queued"
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Job:
        data = dict(row)
        for key in ("id", "contract_id"):
            if data.get(key) is not None:
                data[key] = str(data[key])
        return cls.model_validate(data)


class LogEntry(BaseModel):
    id: int | None = None
    job_id: str | None = None
    step: str
    message: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class ValidationWarning(BaseModel):
    """A non-fatal finding. Travels as data in `ExtractedPayload.warnings`."""

    code: str
    message: str
    field: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class Provenance(BaseModel):
    field: str
    filename: str | None = None
    pages: list[int] | None = None
    excerpt: str | None = None


class TaskLine(BaseModel):
    task_number: str | None = None
    name: str
    budget_uf: float | None = None
    spent_uf: float | None = None
    progress_pct: float | None = None


class RiskItem(BaseModel):
    title: str
    category: str | None = None
    description: str | None = None
    severity: str | None = None
    recommendation: str | None = None


class ObligationItem(BaseModel):
    description: str
    type: str | None = None
    due_date: date | None = None
    criticality: str | None = None


class ContractExtraction(BaseModel):
    kind: Literal["contract"] = "contract"
    code: str | None = None
    title: str | None = None
    client: str | None = None
    contractor: str | None = None
    budget_uf: float | None = None
    currency: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    tasks: list[TaskLine] = Field(default_factory=list)
    risks: list[RiskItem] = Field(default_factory=list)
    obligations: list[ObligationItem] = Field(default_factory=list)

    @property
    def contract_code(self) -> str | None:
        return self.code


class EdpExtraction(BaseModel):
    kind: Literal["edp"] = "edp"
    contract_code: str | None = None
    edp_number: int | None = None
    period_label: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    amount_uf: float | None = None
    uf_rate: float | None = None
    amount_clp: float | None = None
    status: Literal["approved", "submitted"] | None = None
    accumulated_prev_uf: float | None = None
    accumulated_total_uf: float | None = None
    contract_budget_uf: float | None = None
    contract_progress_pct: float | None = None
    tasks_executed: list[TaskLine] = Field(default_factory=list)


class MemoExtraction(BaseModel):
    kind: Literal["memo"] = "memo"
    contract_code: str | None = None
    title: str | None = None
    memo_date: date | None = None
    author: str | None = None
    summary: str | None = None
    risks: list[RiskItem] = Field(default_factory=list)
    obligations: list[ObligationItem] = Field(default_factory=list)


class UnparsedExtraction(BaseModel):
    """Variant for documents whose folder did not map to a known type."""

    kind: Literal["unknown"] = "unknown"
    contract_code: str | None = None
    title: str | None = None
    memo_date: date | None = None
    author: str | None = None
    summary: str | None = None
    risks: list[RiskItem] = Field(default_factory=list)
    obligations: list[ObligationItem] = Field(default_factory=list)


Extraction = Annotated[
    Union[ContractExtraction, EdpExtraction, MemoExtraction, UnparsedExtraction],
    Field(discriminator="kind"),
]


class ExtractedPayload(BaseModel):
    document_type: DocumentType
    source_filename: str | None = None
    raw_output: dict[str, Any] = Field(default_factory=dict)
    structured: Extraction
    confidence: float = 0.0
    warnings: list[ValidationWarning] = Field(default_factory=list)
    review_required: bool = False
    provenance: list[Provenance] = Field(default_factory=list)

    def warn(self, warning: ValidationWarning, *, review: bool = False) -> None:
        self.warnings.append(warning)
        if review:
            self.review_required = True


class Classification(BaseModel):
    document_type: DocumentType
    project_prefix: str | None = None
    entity_code: str | None = None
    type_folder: str | None = None
    filename: str | None = None
    confident: bool = False


class RecordWrite(BaseModel):
    """One natural-key write performed by the upsert router."""

    table: str
    natural_key: dict[str, Any]
    record_id: str | None = None
    action: Literal["inserted", "updated", "resolved", "recomputed", "marked_stale"]


class DispatchResult(BaseModel):
    ok: bool
    job_id: str | None = None
    idle: bool = False
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class CleanupCounts(BaseModel):
    jobs_deleted: int = 0
    jobs_expired: int = 0
    logs_deleted: int = 0
