from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# -------------------- KPI --------------------

class KPIPercentages(BaseModel):
    tat: float = Field(..., ge=0, le=100, description="Turn around time compliance, %")
    major_negativity: float = Field(..., ge=0, le=100, description="Major negativity rate, %")
    quality: float = Field(..., ge=0, le=100, description="Quality issue rate, %")
    neighbor_check: float = Field(..., ge=0, le=100, description="Neighbor check completion, %")
    negativity: float = Field(..., ge=0, le=100, description="General negativity rate, %")
    app_usage: float = Field(..., ge=0, le=100, description="Application usage, %")
    insufficiency: float = Field(..., ge=0, le=100, description="Insufficiency rate, %")


class KPIPreviewRequest(BaseModel):
    metrics: KPIPercentages
    period: str = Field("", description="YYYY-MM or YYYY-Q1..Q4")


class KPISubmitRequest(BaseModel):
    employee_id: str
    period: str = Field(..., description="YYYY-MM or YYYY-Q1..Q4")
    metrics: KPIPercentages
    submitted_by: str = "system"
    comments: Optional[str] = Field(None, max_length=500)
    process_now: bool = Field(True, description="Run trigger automation immediately")


class KPIUpdateRequest(BaseModel):
    metrics: Optional[Dict[str, float]] = None
    comments: Optional[str] = Field(None, max_length=500)


class KPIBulkRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list, description="Rows with employee_id/email/employee_code, period and the seven metrics")
    submitted_by: str = "bulk_upload"
    process_now: bool = True


class SheetImportRequest(BaseModel):
    worksheet: Optional[str] = None
    process_now: bool = True


class KPIOverrideRequest(BaseModel):
    score: int = Field(..., ge=0, le=100)
    rating: str
    reason: str = Field(..., min_length=1, max_length=500)
    overridden_by: str = "manager"


class UnmatchedMatchRequest(BaseModel):
    employee_id: str
    submitted_by: str = "system"
    process_now: bool = True


class UnmatchedDismissRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class ConfigSectionUpdate(BaseModel):
    value: Any
    updated_by: Optional[str] = None


# -------------------- Audits --------------------

class AuditCreate(BaseModel):
    employee_id: str
    audit_type: str = Field(..., description="audit_call | cross_check | dummy_audit")
    scheduled_date: datetime
    priority: str = "medium"
    scope: str = Field("", max_length=500)
    method: str = Field("", max_length=500)
    assigned_auditor: Optional[str] = None


class AuditUpdate(BaseModel):
    scheduled_date: Optional[datetime] = None
    priority: Optional[str] = None
    scope: Optional[str] = Field(None, max_length=500)
    method: Optional[str] = Field(None, max_length=500)
    assigned_auditor: Optional[str] = None
    audit_type: Optional[str] = None


class AuditComplete(BaseModel):
    findings: str = Field(..., min_length=10, max_length=2000)
    recommendations: Optional[str] = Field(None, max_length=1000)
    risk_level: Optional[str] = None
    compliance_status: str = "not_assessed"


class AuditFollowUp(BaseModel):
    follow_up_date: datetime
    notes: Optional[str] = Field(None, max_length=500)


class AuditCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# -------------------- Training --------------------

class TrainingCreate(BaseModel):
    employee_id: str
    training_type: str = Field(..., description="basic | negativity_handling | dos_donts | app_usage")
    due_date: datetime
    title: Optional[str] = None
    priority: str = "medium"
    reason: str = ""


class TrainingUpdate(BaseModel):
    title: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class TrainingComplete(BaseModel):
    score: Optional[float] = Field(None, ge=0, le=100)
    notes: Optional[str] = Field(None, max_length=1000)


# -------------------- Email & notifications --------------------

class BulkEmailRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    employee_ids: Optional[List[str]] = None
    roles: Optional[List[str]] = None
    group_ids: Optional[List[str]] = None
    scheduled_for: Optional[datetime] = None


class TemplatePreviewRequest(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict)


class MarkReadRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)


# -------------------- Employees --------------------

class EmployeeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str
    role: str = "fe"
    employee_code: Optional[str] = None
    department: Optional[str] = None


class EmployeeUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    employee_code: Optional[str] = None
    department: Optional[str] = None
    status: Optional[str] = None


class WarningCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=1000)
    severity: str = "medium"
    issued_by: str = "manual"


class WarningClose(BaseModel):
    status: str = "resolved"
    note: Optional[str] = Field(None, max_length=500)


class RecognitionCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    reason: str = Field(..., min_length=1, max_length=1000)
    period: Optional[str] = None
    granted_by: str = "manual"


# -------------------- Recipient groups --------------------

class GroupMemberIn(BaseModel):
    email: str
    name: Optional[str] = None
    role: str = "other"
    department: Optional[str] = None


class RecipientGroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    members: List[GroupMemberIn] = Field(default_factory=list)
    criteria: Dict[str, List[str]] = Field(default_factory=dict, description="roles and/or departments")
    created_by: str = "system"


class RecipientGroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    criteria: Optional[Dict[str, List[str]]] = None
