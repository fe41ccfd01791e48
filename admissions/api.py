from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, configure_logging
from .exceptions import (
    AdmissionsError, ConflictError, GatewayError, GatewayTimeout, InvalidState,
    NotFound, PersistenceError, ValidationError,
)
from .models import (
    Admission, AdmissionListResponse, AdmissionStatus, ApprovalResult, CourseFees, CourseFeesRequest,
    ApproveJoiningRequest, CreateJoiningRequest, CreateOrderRequest, EntityKind,
    EntityRef, Joining, JoiningListResponse, JoiningPatch, JoiningStatus,
    PaymentSummary, PaymentTransaction, ReconciliationReport, RecordTransactionRequest,
    RejectJoiningRequest, SubmitJoiningRequest, TransactionListResponse,
    TransactionResult, WithdrawAdmissionRequest,
)
from .reconciliation import ReconciliationScheduler
from .service import AdmissionsService, build_gateway

ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidState, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (GatewayTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def default_service(settings: Settings) -> AdmissionsService:
    return AdmissionsService(gateway=build_gateway(settings), settings=settings)


def create_app(
    service: Optional[AdmissionsService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = default_service(settings)
        scheduler = None
        if app.state.service.reconciler is not None:
            scheduler = ReconciliationScheduler(app.state.service.reconciler, settings.reconcile_interval_minutes)
            scheduler.start()
        yield
        if scheduler is not None:
            scheduler.stop()

    app = FastAPI(
        title="Admissions API",
        description="Joining approval lifecycle, admission numbering and the payment ledger",
        version="1.0.0",
        lifespan=lifespan,
        root_path=root_path,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AdmissionsError)
    async def admissions_error_handler(request: Request, exc: AdmissionsError):
        status_code = status.HTTP_400_BAD_REQUEST
        for error_type, code in ERROR_STATUS:
            if isinstance(exc, error_type):
                status_code = code
                break
        body = {"detail": exc.message, "error": type(exc).__name__}
        if isinstance(exc, ValidationError) and exc.missing_fields:
            body["missing_fields"] = exc.missing_fields
        return JSONResponse(status_code=status_code, content=body)

    def get_service(request: Request) -> AdmissionsService:
        if request.app.state.service is None:
            request.app.state.service = default_service(settings)
        return request.app.state.service

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "admissions"}

    # Joinings

    @app.post("/joinings", response_model=Joining, status_code=status.HTTP_201_CREATED, tags=["Joinings"])
    def create_joining(request: CreateJoiningRequest, svc: AdmissionsService = Depends(get_service)) -> Joining:
        return svc.create_draft(request.payload, request.lead_id, request.created_by)

    @app.get("/joinings", response_model=JoiningListResponse, tags=["Joinings"])
    def list_joinings(
        joining_status: Optional[JoiningStatus] = None,
        limit: int = 50,
        offset: int = 0,
        svc: AdmissionsService = Depends(get_service),
    ) -> JoiningListResponse:
        return svc.list_joinings(joining_status, limit, offset)

    @app.get("/joinings/lead/{lead_id}", response_model=Joining, tags=["Joinings"])
    def get_joining_by_lead(lead_id: str, svc: AdmissionsService = Depends(get_service)) -> Joining:
        return svc.get_joining_by_lead(lead_id)

    @app.get("/joinings/{joining_id}", response_model=Joining, tags=["Joinings"])
    def get_joining(joining_id: UUID, svc: AdmissionsService = Depends(get_service)) -> Joining:
        return svc.get_joining(joining_id)

    @app.patch("/joinings/{joining_id}", response_model=Joining, tags=["Joinings"])
    def update_joining(
        joining_id: UUID, patch: JoiningPatch, svc: AdmissionsService = Depends(get_service)
    ) -> Joining:
        return svc.update_draft(joining_id, patch)

    @app.post("/joinings/{joining_id}/submit", response_model=Joining, tags=["Joinings"])
    def submit_joining(
        joining_id: UUID,
        request: Optional[SubmitJoiningRequest] = None,
        svc: AdmissionsService = Depends(get_service),
    ) -> Joining:
        return svc.submit_for_approval(joining_id, request.submitted_by if request else None)

    @app.post("/joinings/{joining_id}/approve", response_model=ApprovalResult, tags=["Joinings"])
    def approve_joining(
        joining_id: UUID, request: ApproveJoiningRequest, svc: AdmissionsService = Depends(get_service)
    ) -> ApprovalResult:
        return svc.approve(joining_id, request.approver_id)

    @app.post("/joinings/{joining_id}/reject", response_model=Joining, tags=["Joinings"])
    def reject_joining(
        joining_id: UUID, request: RejectJoiningRequest, svc: AdmissionsService = Depends(get_service)
    ) -> Joining:
        return svc.reject(joining_id, request.reason, request.rejected_by)

    # Admissions

    @app.get("/admissions", response_model=AdmissionListResponse, tags=["Admissions"])
    def list_admissions(
        admission_status: Optional[AdmissionStatus] = None,
        limit: int = 50,
        offset: int = 0,
        svc: AdmissionsService = Depends(get_service),
    ) -> AdmissionListResponse:
        return svc.list_admissions(admission_status, limit, offset)

    @app.get("/admissions/joining/{joining_id}", response_model=Admission, tags=["Admissions"])
    def get_admission_by_joining(joining_id: UUID, svc: AdmissionsService = Depends(get_service)) -> Admission:
        return svc.get_admission_by_joining(joining_id)

    @app.get("/admissions/{admission_id}", response_model=Admission, tags=["Admissions"])
    def get_admission(admission_id: UUID, svc: AdmissionsService = Depends(get_service)) -> Admission:
        return svc.get_admission(admission_id)

    @app.post("/admissions/{admission_id}/withdraw", response_model=Admission, tags=["Admissions"])
    def withdraw_admission(
        admission_id: UUID, request: WithdrawAdmissionRequest, svc: AdmissionsService = Depends(get_service)
    ) -> Admission:
        return svc.withdraw_admission(admission_id, request.reason)

    # Payments

    @app.post(
        "/payments/transactions",
        response_model=TransactionResult,
        status_code=status.HTTP_201_CREATED,
        tags=["Payments"],
    )
    def record_transaction(
        request: RecordTransactionRequest, svc: AdmissionsService = Depends(get_service)
    ) -> TransactionResult:
        return svc.record_transaction(
            request.entity_ref(),
            request.amount,
            request.mode,
            request.collected_by,
            request.status,
            currency=request.currency,
            notes=request.notes,
            is_additional_fee=request.is_additional_fee,
            gateway_order_id=request.gateway_order_id,
            reference_id=request.reference_id,
        )

    @app.get("/payments/transactions", response_model=TransactionListResponse, tags=["Payments"])
    def list_transactions(
        joining_id: Optional[UUID] = None,
        admission_id: Optional[UUID] = None,
        lead_id: Optional[str] = None,
        svc: AdmissionsService = Depends(get_service),
    ) -> TransactionListResponse:
        return svc.list_transactions(joining_id, admission_id, lead_id)

    @app.post(
        "/payments/orders",
        response_model=TransactionResult,
        status_code=status.HTTP_201_CREATED,
        tags=["Payments"],
    )
    def create_order(request: CreateOrderRequest, svc: AdmissionsService = Depends(get_service)) -> TransactionResult:
        return svc.create_online_order(
            request.entity_ref(),
            request.amount,
            request.collected_by,
            request.customer,
            currency=request.currency,
            notes=request.notes,
            is_additional_fee=request.is_additional_fee,
        )

    @app.post("/payments/orders/{order_id}/verify", response_model=PaymentTransaction, tags=["Payments"])
    def verify_order(order_id: str, svc: AdmissionsService = Depends(get_service)) -> PaymentTransaction:
        return svc.verify_order(order_id)

    @app.get("/payments/summary/{kind}/{entity_id}", response_model=PaymentSummary, tags=["Payments"])
    def get_summary(kind: EntityKind, entity_id: UUID, svc: AdmissionsService = Depends(get_service)) -> PaymentSummary:
        return svc.get_summary(EntityRef(kind=kind, id=entity_id))

    @app.post("/payments/reconcile", response_model=ReconciliationReport, tags=["Payments"])
    def reconcile(svc: AdmissionsService = Depends(get_service)) -> ReconciliationReport:
        return svc.reconcile_pending()

    @app.get("/payments/settings/courses/{course_id}/fees", response_model=CourseFees, tags=["Payment Settings"])
    def get_course_fees(course_id: str, svc: AdmissionsService = Depends(get_service)) -> CourseFees:
        return svc.get_course_fees(course_id)

    @app.put("/payments/settings/courses/{course_id}/fees", response_model=CourseFees, tags=["Payment Settings"])
    def upsert_course_fees(
        course_id: str, request: CourseFeesRequest, svc: AdmissionsService = Depends(get_service)
    ) -> CourseFees:
        return svc.upsert_course_fees(course_id, request)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
