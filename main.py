import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    HOST_ROLES,
    SECURITY_ROLES,
    IdentityService,
    ensure_can_approve,
    get_current_user,
    get_identity,
    require_roles,
)
from config import Settings
from database import DocumentStore, create_store, now_utc
from errors import VisitorAppError
from notifications import NotificationRelay
from qr import qr_payload, render_pass_pdf, render_qr_png
from schemas import (
    CabEntry,
    LoginRequest,
    ProfileUpdate,
    QuickCheckInRequest,
    RegisterRequest,
    RejectRequest,
    ScanRequest,
    User,
    VisitorRegistration,
    VisitorRequestCreate,
)
from workflow import VisitorWorkflow

logger = logging.getLogger(__name__)


# --------------- Helpers ---------------

def ok(message: str, data=None, status_code: int = 200) -> JSONResponse:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=body)


def fail(status_code: int, message: str, error: Optional[str] = None) -> JSONResponse:
    body = {"success": False, "message": message}
    if error:
        body["error"] = error
    return JSONResponse(status_code=status_code, content=body)


def get_workflow(request: Request) -> VisitorWorkflow:
    return request.app.state.workflow


def get_relay(request: Request) -> NotificationRelay:
    return request.app.state.relay


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --------------- Routes: health + auth ---------------
router = APIRouter(prefix="/api")


@router.get("/health")
def health():
    return {
        "success": True,
        "message": "RVVM Backend API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/auth/register")
def register_user(req: RegisterRequest, identity: IdentityService = Depends(get_identity)):
    user = identity.register_user(req)
    data = {"token": identity.issue_token(user), "user": user.to_api()}
    return ok("User registered successfully", data, status_code=201)


@router.post("/auth/login")
def login(req: LoginRequest, identity: IdentityService = Depends(get_identity)):
    user = identity.authenticate(req.email, req.password)
    return ok("Login successful", {"token": identity.issue_token(user), "user": user.to_api()})


@router.get("/auth/me")
def me(user: User = Depends(get_current_user)):
    return ok("Profile retrieved successfully", user.to_api())


@router.put("/auth/me")
def update_me(
    changes: ProfileUpdate,
    user: User = Depends(get_current_user),
    identity: IdentityService = Depends(get_identity),
):
    return ok("Profile updated successfully", identity.update_profile(user, changes).to_api())


# --------------- Routes: visitors (public) ---------------

@router.post("/visitors/register")
def register_visitor(req: VisitorRegistration, workflow: VisitorWorkflow = Depends(get_workflow)):
    visit = workflow.register(req)
    return ok("Visitor registered successfully", visit.to_api(), status_code=201)


@router.post("/visitors/quick-checkin")
def quick_check_in(req: QuickCheckInRequest, workflow: VisitorWorkflow = Depends(get_workflow)):
    visit = workflow.quick_check_in(req.contact_number)
    return ok("Quick check-in successful", visit.to_api(), status_code=201)


@router.post("/visitors/cab-entry")
def cab_entry(
    req: CabEntry,
    workflow: VisitorWorkflow = Depends(get_workflow),
    relay: NotificationRelay = Depends(get_relay),
):
    visit = workflow.register_cab(req)
    relay.notify_cab_entry(visit)
    return ok("Cab entry registered successfully", visit.to_api(), status_code=201)


# --------------- Routes: visitors (staff) ---------------

@router.get("/visitors/today")
def todays_visitors(user: User = Depends(get_current_user), workflow: VisitorWorkflow = Depends(get_workflow)):
    visits = workflow.todays_visits()
    return ok("Today's visitors retrieved successfully", [v.to_api() for v in visits])


@router.get("/visitors/pending-approvals")
def pending_approvals(
    user: User = Depends(require_roles(*HOST_ROLES)),
    workflow: VisitorWorkflow = Depends(get_workflow),
):
    host_email = None if user.role == "admin" else user.email
    visits = workflow.pending_approvals(host_email)
    return ok("Pending approvals retrieved successfully", [v.to_api() for v in visits])


@router.put("/visitors/approve/{visit_id}")
def approve_visitor(
    visit_id: str,
    user: User = Depends(require_roles(*HOST_ROLES)),
    workflow: VisitorWorkflow = Depends(get_workflow),
    relay: NotificationRelay = Depends(get_relay),
):
    ensure_can_approve(user, workflow.get(visit_id))
    visit = workflow.approve(visit_id, user.email)
    relay.sync_visit(visit, user)
    return ok("Visitor approved successfully", visit.to_api())


@router.put("/visitors/reject/{visit_id}")
def reject_visitor(
    visit_id: str,
    req: Optional[RejectRequest] = None,
    user: User = Depends(require_roles(*HOST_ROLES)),
    workflow: VisitorWorkflow = Depends(get_workflow),
    relay: NotificationRelay = Depends(get_relay),
):
    ensure_can_approve(user, workflow.get(visit_id))
    visit = workflow.reject(visit_id, user.email, req.reason if req else None)
    relay.sync_visit(visit, user)
    return ok("Visitor rejected", visit.to_api())


@router.put("/visitors/checkin/{visit_id}")
def check_in_visitor(
    visit_id: str,
    user: User = Depends(require_roles(*SECURITY_ROLES)),
    workflow: VisitorWorkflow = Depends(get_workflow),
):
    visit = workflow.check_in(visit_id, user.email)
    return ok("Visitor checked in successfully", visit.to_api())


@router.put("/visitors/checkout/{visit_id}")
def check_out_visitor(
    visit_id: str,
    user: User = Depends(require_roles(*SECURITY_ROLES)),
    workflow: VisitorWorkflow = Depends(get_workflow),
):
    visit = workflow.check_out(visit_id, user.email)
    return ok("Visitor checked out successfully", visit.to_api())


@router.post("/visitors/scan")
def scan_qr(
    req: ScanRequest,
    user: User = Depends(require_roles(*SECURITY_ROLES)),
    workflow: VisitorWorkflow = Depends(get_workflow),
    relay: NotificationRelay = Depends(get_relay),
):
    visit = workflow.scan(req.payload, user.email)
    relay.sync_visit(visit, user)
    return ok(f"Welcome, {visit.name}! Check-in successful.", visit.to_api())


@router.get("/visitors/{visit_id}")
def get_visitor(
    visit_id: str,
    user: User = Depends(get_current_user),
    workflow: VisitorWorkflow = Depends(get_workflow),
):
    return ok("Visitor retrieved successfully", workflow.get(visit_id).to_api())


@router.get("/visitors/{visit_id}/qr")
def visitor_qr(visit_id: str, workflow: VisitorWorkflow = Depends(get_workflow)):
    visit = workflow.get(visit_id)
    return Response(content=render_qr_png(qr_payload(visit)), media_type="image/png")


@router.get("/visitors/{visit_id}/pass")
def visitor_pass(visit_id: str, workflow: VisitorWorkflow = Depends(get_workflow)):
    visit = workflow.get(visit_id)
    headers = {"Content-Disposition": f'inline; filename="visitor_pass_{visit.id}.pdf"'}
    return Response(content=render_pass_pdf(visit), media_type="application/pdf", headers=headers)


@router.get("/dashboard/stats")
def dashboard_stats(user: User = Depends(get_current_user), workflow: VisitorWorkflow = Depends(get_workflow)):
    return ok("Dashboard stats retrieved successfully", workflow.stats())


# --------------- Routes: visitor requests ---------------

@router.post("/requests")
def create_request(
    req: VisitorRequestCreate,
    user: User = Depends(require_roles(*SECURITY_ROLES)),
    relay: NotificationRelay = Depends(get_relay),
):
    request = relay.create_request(req, user)
    return ok("Visitor request sent to host", request.to_api(), status_code=201)


@router.get("/requests")
def all_requests(user: User = Depends(require_roles(*SECURITY_ROLES)), relay: NotificationRelay = Depends(get_relay)):
    return ok("Visitor requests retrieved successfully", [r.to_api() for r in relay.list_all()])


@router.get("/requests/pending")
def pending_requests(user: User = Depends(require_roles(*HOST_ROLES)), relay: NotificationRelay = Depends(get_relay)):
    requests = relay.list_pending_for_host(user.id)
    return ok("Pending requests retrieved successfully", [r.to_api() for r in requests])


@router.get("/requests/approved")
def approved_requests(user: User = Depends(require_roles(*HOST_ROLES)), relay: NotificationRelay = Depends(get_relay)):
    requests = relay.list_approved_for_host(user.id)
    return ok("Approved requests retrieved successfully", [r.to_api() for r in requests])


@router.put("/requests/{request_id}/approve")
def approve_request(
    request_id: str,
    user: User = Depends(require_roles(*HOST_ROLES)),
    relay: NotificationRelay = Depends(get_relay),
):
    return ok("Visitor request approved", relay.approve_request(request_id, user).to_api())


@router.put("/requests/{request_id}/reject")
def reject_request(
    request_id: str,
    req: Optional[RejectRequest] = None,
    user: User = Depends(require_roles(*HOST_ROLES)),
    relay: NotificationRelay = Depends(get_relay),
):
    request = relay.reject_request(request_id, user, req.reason if req else None)
    return ok("Visitor request rejected", request.to_api())


# --------------- Routes: notifications ---------------

@router.get("/notifications")
def list_notifications(
    unread: bool = False,
    user: User = Depends(get_current_user),
    relay: NotificationRelay = Depends(get_relay),
):
    notes = relay.list_for(user.id, unread_only=unread)
    return ok("Notifications retrieved successfully", [n.to_api() for n in notes])


@router.get("/notifications/unread-count")
def unread_count(user: User = Depends(get_current_user), relay: NotificationRelay = Depends(get_relay)):
    return ok("Unread count retrieved successfully", {"unreadCount": relay.unread_count(user.id)})


@router.put("/notifications/read-all")
def mark_all_read(user: User = Depends(get_current_user), relay: NotificationRelay = Depends(get_relay)):
    return ok("Notifications marked as read", {"updated": relay.mark_all_read(user.id)})


@router.put("/notifications/{notification_id}/read")
def mark_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    relay: NotificationRelay = Depends(get_relay),
):
    return ok("Notification marked as read", relay.mark_read(notification_id, user.id).to_api())


# --------------- App factory ---------------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    clock: Callable[[], datetime] = now_utc,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    store = store or create_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.identity.ensure_admin()
        logger.info("[startup] Environment: %s, store: %s", settings.environment, store.name)
        yield

    app = FastAPI(title="RVVM Visitor Management API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.workflow = VisitorWorkflow(store, clock=clock, timezone=settings.timezone)
    app.state.identity = IdentityService(store, settings, clock=clock)
    app.state.relay = NotificationRelay(store, app.state.workflow, clock=clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VisitorAppError)
    async def app_error_handler(request: Request, exc: VisitorAppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.error)
        error = None if settings.is_production else exc.error
        return fail(exc.status_code, exc.message, error)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = [
            {"field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"), "message": e.get("msg", "")}
            for e in exc.errors()
        ]
        body = {"success": False, "message": "Validation failed", "errors": problems}
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return fail(404, "Route not found")
        return fail(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = "Internal Server Error" if settings.is_production else str(exc)
        return fail(500, "Something went wrong!", error)

    @app.get("/")
    def read_root():
        return {"message": "RVVM Visitor Management API running"}

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
