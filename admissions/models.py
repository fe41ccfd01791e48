from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field, model_validator


class JoiningStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"


class AdmissionStatus(str, Enum):
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"


class PaymentMode(str, Enum):
    CASH = "cash"
    ONLINE = "online"
    UPI_QR = "upi_qr"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentSummaryStatus(str, Enum):
    NOT_STARTED = "not_started"
    PARTIAL = "partial"
    PAID = "paid"


class EntityKind(str, Enum):
    JOINING = "joining"
    ADMISSION = "admission"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"


class ReservationCategory(str, Enum):
    OC = "oc"
    EWS = "ews"
    BC_A = "bc-a"
    BC_B = "bc-b"
    BC_C = "bc-c"
    BC_D = "bc-d"
    BC_E = "bc-e"
    SC = "sc"
    ST = "st"


class Medium(str, Enum):
    ENGLISH = "english"
    TELUGU = "telugu"
    OTHER = "other"


class EducationLevel(str, Enum):
    SSC = "ssc"
    INTER_DIPLOMA = "inter_diploma"
    UG = "ug"
    OTHER = "other"


# Joining payload sections

class StudentInfo(BaseModel):
    name: str = ""
    aadhaar_number: Optional[str] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[str] = None
    notes: Optional[str] = None


class CourseInfo(BaseModel):
    course_id: Optional[str] = None
    branch_id: Optional[str] = None
    course: Optional[str] = None
    branch: Optional[str] = None
    quota: Optional[str] = None


class ParentInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    aadhaar_number: Optional[str] = None


class Parents(BaseModel):
    father: ParentInfo = Field(default_factory=ParentInfo)
    mother: ParentInfo = Field(default_factory=ParentInfo)


class Reservation(BaseModel):
    general: ReservationCategory = ReservationCategory.OC
    other: list[str] = Field(default_factory=list)


class CommunicationAddress(BaseModel):
    state: Optional[str] = None
    door_or_street: Optional[str] = None
    landmark: Optional[str] = None
    village_or_city: Optional[str] = None
    mandal: Optional[str] = None
    district: Optional[str] = None
    pin_code: Optional[str] = None


class RelativeAddress(CommunicationAddress):
    name: Optional[str] = None
    relationship: Optional[str] = None


class Address(BaseModel):
    communication: CommunicationAddress = Field(default_factory=CommunicationAddress)
    relatives: list[RelativeAddress] = Field(default_factory=list)


class Qualifications(BaseModel):
    ssc: bool = False
    inter_or_diploma: bool = False
    ug: bool = False
    mediums: list[Medium] = Field(default_factory=list)
    other_medium_label: Optional[str] = None


class EducationRecord(BaseModel):
    level: EducationLevel
    other_level_label: Optional[str] = None
    course_or_branch: Optional[str] = None
    year_of_passing: Optional[str] = None
    institution_name: Optional[str] = None
    institution_address: Optional[str] = None
    hall_ticket_number: Optional[str] = None
    total_marks_or_grade: Optional[str] = None
    cet_rank: Optional[str] = None


class Sibling(BaseModel):
    name: Optional[str] = None
    relation: Optional[str] = None
    studying_standard: Optional[str] = None
    institution_name: Optional[str] = None


class Documents(BaseModel):
    ssc: DocumentStatus = DocumentStatus.PENDING
    inter: DocumentStatus = DocumentStatus.PENDING
    ug_or_pg_cmm: DocumentStatus = DocumentStatus.PENDING
    transfer_certificate: DocumentStatus = DocumentStatus.PENDING
    study_certificate: DocumentStatus = DocumentStatus.PENDING
    aadhaar_card: DocumentStatus = DocumentStatus.PENDING
    photos: DocumentStatus = DocumentStatus.PENDING
    income_certificate: DocumentStatus = DocumentStatus.PENDING
    caste_certificate: DocumentStatus = DocumentStatus.PENDING
    cet_rank_card: DocumentStatus = DocumentStatus.PENDING
    cet_hall_ticket: DocumentStatus = DocumentStatus.PENDING
    allotment_letter: DocumentStatus = DocumentStatus.PENDING
    joining_report: DocumentStatus = DocumentStatus.PENDING
    bank_pass_book: DocumentStatus = DocumentStatus.PENDING
    ration_card: DocumentStatus = DocumentStatus.PENDING


class JoiningPayload(BaseModel):
    student_info: StudentInfo = Field(default_factory=StudentInfo)
    course_info: CourseInfo = Field(default_factory=CourseInfo)
    parents: Parents = Field(default_factory=Parents)
    reservation: Reservation = Field(default_factory=Reservation)
    address: Address = Field(default_factory=Address)
    qualifications: Qualifications = Field(default_factory=Qualifications)
    education_history: list[EducationRecord] = Field(default_factory=list)
    siblings: list[Sibling] = Field(default_factory=list)
    documents: Documents = Field(default_factory=Documents)

    def missing_required_fields(self) -> list[str]:
        missing = []
        if not self.student_info.name.strip():
            missing.append("student_info.name")
        if not (self.course_info.course_id or "").strip():
            missing.append("course_info.course_id")
        return missing


class JoiningPatch(BaseModel):
    """Section-level update: every supplied section replaces the stored one."""

    student_info: Optional[StudentInfo] = None
    course_info: Optional[CourseInfo] = None
    parents: Optional[Parents] = None
    reservation: Optional[Reservation] = None
    address: Optional[Address] = None
    qualifications: Optional[Qualifications] = None
    education_history: Optional[list[EducationRecord]] = None
    siblings: Optional[list[Sibling]] = None
    documents: Optional[Documents] = None

    def apply_to(self, payload: JoiningPayload) -> JoiningPayload:
        data = payload.model_dump()
        data.update(self.model_dump(exclude_none=True))
        return JoiningPayload.model_validate(data)


# Entities

class EntityRef(BaseModel):
    kind: EntityKind
    id: UUID

    @classmethod
    def joining(cls, joining_id: UUID) -> "EntityRef":
        return cls(kind=EntityKind.JOINING, id=joining_id)

    @classmethod
    def admission(cls, admission_id: UUID) -> "EntityRef":
        return cls(kind=EntityKind.ADMISSION, id=admission_id)


class PaymentSummary(BaseModel):
    total_fee: Decimal
    total_paid: Decimal
    balance: Decimal
    currency: str = "INR"
    status: PaymentSummaryStatus
    last_payment_at: Optional[datetime] = None
    pending_amount: Decimal = Decimal("0.00")
    pending_count: int = 0
    overpaid: bool = False

    @computed_field
    @property
    def reconciliation_in_progress(self) -> bool:
        return self.pending_count > 0


class Joining(BaseModel):
    id: UUID
    lead_id: Optional[str] = None
    status: JoiningStatus
    payload: JoiningPayload
    payment_summary: Optional[PaymentSummary] = None
    draft_updated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    submitted_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_edit(self) -> bool:
        return self.status == JoiningStatus.DRAFT

    def can_submit(self) -> bool:
        return self.status == JoiningStatus.DRAFT

    def can_approve(self) -> bool:
        return self.status == JoiningStatus.PENDING_APPROVAL

    def can_reject(self) -> bool:
        return self.status == JoiningStatus.PENDING_APPROVAL


class Admission(BaseModel):
    id: UUID
    joining_id: UUID
    lead_id: Optional[str] = None
    admission_number: int
    status: AdmissionStatus
    admission_date: datetime
    payload: JoiningPayload
    payment_summary: Optional[PaymentSummary] = None
    created_by: Optional[str] = None
    withdrawn_at: Optional[datetime] = None
    withdrawal_reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_withdraw(self) -> bool:
        return self.status == AdmissionStatus.ACTIVE


class PaymentTransaction(BaseModel):
    id: UUID
    joining_id: Optional[UUID] = None
    admission_id: Optional[UUID] = None
    lead_id: Optional[str] = None
    course_id: Optional[str] = None
    branch_id: Optional[str] = None
    amount: Decimal
    currency: str = "INR"
    mode: PaymentMode
    status: PaymentStatus
    collected_by: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_session_id: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    is_additional_fee: bool = False
    processed_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_resolved(self) -> bool:
        return self.status != PaymentStatus.PENDING


# Requests

class CreateJoiningRequest(BaseModel):
    lead_id: Optional[str] = None
    created_by: Optional[str] = None
    payload: JoiningPayload = Field(default_factory=JoiningPayload)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "lead_id": "lead-1042",
            "created_by": "operator@college.example",
            "payload": {
                "student_info": {"name": "Ravi Kumar", "phone": "9876543210"},
                "course_info": {"course_id": "btech", "branch_id": "cse", "quota": "convener"},
            }
        }
    })


class SubmitJoiningRequest(BaseModel):
    submitted_by: Optional[str] = None


class ApproveJoiningRequest(BaseModel):
    approver_id: str = Field(..., description="User approving the joining form")


class RejectJoiningRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the form goes back to draft")
    rejected_by: Optional[str] = None


class WithdrawAdmissionRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    performed_by: Optional[str] = None


class RecordTransactionRequest(BaseModel):
    joining_id: Optional[UUID] = None
    admission_id: Optional[UUID] = None
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    mode: PaymentMode = PaymentMode.CASH
    status: Optional[PaymentStatus] = None
    currency: Optional[str] = None
    collected_by: Optional[str] = None
    gateway_order_id: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    is_additional_fee: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "joining_id": "3f0c2a8e-8d44-4a55-9f57-6f0e4f1c2b11",
            "amount": 20000.00,
            "mode": "cash",
            "collected_by": "cashier@college.example"
        }
    })

    @model_validator(mode="after")
    def _exactly_one_reference(self):
        if (self.joining_id is None) == (self.admission_id is None):
            raise ValueError("exactly one of joining_id or admission_id is required")
        return self

    def entity_ref(self) -> EntityRef:
        if self.joining_id is not None:
            return EntityRef.joining(self.joining_id)
        return EntityRef.admission(self.admission_id)


class GatewayCustomer(BaseModel):
    customer_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CreateOrderRequest(BaseModel):
    joining_id: Optional[UUID] = None
    admission_id: Optional[UUID] = None
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = None
    collected_by: Optional[str] = None
    customer: GatewayCustomer = Field(default_factory=GatewayCustomer)
    notes: Optional[str] = None
    is_additional_fee: bool = False

    @model_validator(mode="after")
    def _exactly_one_reference(self):
        if (self.joining_id is None) == (self.admission_id is None):
            raise ValueError("exactly one of joining_id or admission_id is required")
        return self

    def entity_ref(self) -> EntityRef:
        if self.joining_id is not None:
            return EntityRef.joining(self.joining_id)
        return EntityRef.admission(self.admission_id)


# Responses

class ApprovalResult(BaseModel):
    joining: Joining
    admission: Admission
    created: bool
    message: str


class TransactionResult(BaseModel):
    transaction: PaymentTransaction
    summary: PaymentSummary
    message: str


class GatewayOrder(BaseModel):
    order_id: str
    payment_session_id: Optional[str] = None
    status: str
    reference_id: Optional[str] = Field(None, description="Gateway-side reference for the order")


class BranchFee(BaseModel):
    branch_id: str
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class CourseFeesRequest(BaseModel):
    fees: list[BranchFee] = Field(default_factory=list)
    default_fee: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "default_fee": 45000.00,
            "fees": [{"branch_id": "cse", "amount": 50000.00}],
            "currency": "INR",
        }
    })


class CourseFees(BaseModel):
    course_id: str
    default_fee: Optional[Decimal] = None
    fees: list[BranchFee] = Field(default_factory=list)
    currency: str = "INR"


class ReconciliationReport(BaseModel):
    checked: int = 0
    updated: int = 0
    failed: int = 0
    errors: int = 0
    still_pending: int = 0
    started_at: datetime
    finished_at: Optional[datetime] = None


class JoiningListResponse(BaseModel):
    joinings: list[Joining]
    total_count: int


class AdmissionListResponse(BaseModel):
    admissions: list[Admission]
    total_count: int


class TransactionListResponse(BaseModel):
    transactions: list[PaymentTransaction]
    total_count: int
