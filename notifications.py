"""
Notification and visitor-request relay.

Security raises a VisitorRequest on a visitor's behalf; the named host
approves or rejects it, and each step leaves a Notification for the other
side. Everything is stored server-side and read back by polling.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from database import NOTIFICATIONS, USERS, VISITOR_REQUESTS, DocumentStore, create_document, now_utc
from errors import Forbidden, InvalidTransition, NotFound, ValidationError
from schemas import Notification, User, Visit, VisitorRegistration, VisitorRequest, VisitorRequestCreate
from workflow import VisitorWorkflow

logger = logging.getLogger(__name__)


class NotificationRelay:
    def __init__(self, store: DocumentStore, workflow: VisitorWorkflow, clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.workflow = workflow
        self.clock = clock

    # -------------------- Notifications --------------------
    def notify(
        self,
        recipient: str,
        title: str,
        message: str,
        kind: str = "general",
        sender: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> str:
        note = Notification(
            type=kind,
            title=title,
            message=message,
            timestamp=self.clock(),
            sender=sender,
            recipient=recipient,
            data=data,
        )
        note_id = create_document(self.store, NOTIFICATIONS, note)
        logger.debug("Notification %s (%s) for %s", note_id, kind, recipient)
        return note_id

    def list_for(self, recipient: str, unread_only: bool = False) -> List[Notification]:
        filters = [("to", "==", recipient)]
        if unread_only:
            filters.append(("isRead", "==", False))
        docs = self.store.query(NOTIFICATIONS, filters, order_by="timestamp", descending=True)
        return [Notification.model_validate(d) for d in docs]

    def unread_count(self, recipient: str) -> int:
        return len(self.list_for(recipient, unread_only=True))

    def mark_read(self, notification_id: str, recipient: str) -> Notification:
        try:
            doc = self.store.get(NOTIFICATIONS, notification_id)
        except NotFound:
            raise NotFound("Notification not found")
        if doc.get("to") != recipient:
            raise NotFound("Notification not found")
        return Notification.model_validate(self.store.update(NOTIFICATIONS, notification_id, {"isRead": True}))

    def mark_all_read(self, recipient: str) -> int:
        unread = self.list_for(recipient, unread_only=True)
        for note in unread:
            self.store.update(NOTIFICATIONS, note.id, {"isRead": True})
        return len(unread)

    def notify_cab_entry(self, visit: Visit) -> Optional[str]:
        email = (visit.whom_to_meet_email or visit.whom_to_meet or "").strip().lower()
        hosts = self.store.query(USERS, [("email", "==", email)], limit=1) if email else []
        if not hosts:
            return None
        return self.notify(
            hosts[0]["id"],
            "Cab Entry",
            f"{visit.name} arrived by {visit.cab_provider} cab ({visit.vehicle_number}).",
            kind="cab_entry",
            data={"visitId": visit.id},
        )

    # -------------------- Visitor requests --------------------
    def get_request(self, request_id: str) -> VisitorRequest:
        try:
            return VisitorRequest.model_validate(self.store.get(VISITOR_REQUESTS, request_id))
        except NotFound:
            raise NotFound("Visitor request not found")

    def _host(self, host_id: str) -> User:
        try:
            host = User.model_validate(self.store.get(USERS, host_id))
        except NotFound:
            raise NotFound("Host not found")
        if host.role not in ("host", "admin"):
            raise ValidationError("Selected user is not a host")
        return host

    def create_request(self, req: VisitorRequestCreate, security: User) -> VisitorRequest:
        host = self._host(req.host_id)
        details = req.model_dump(by_alias=True, exclude_none=True, exclude={"host_id", "security_notes"})
        details["whomToMeet"] = host.email
        details["whomToMeetEmail"] = host.email
        details["department"] = req.department or host.department or "General"
        visit = self.workflow.register(VisitorRegistration.model_validate(details))

        request = VisitorRequest(
            visit_id=visit.id,
            visitor_name=visit.name,
            visitor_phone=visit.contact_number,
            visitor_email=visit.email,
            department=visit.department,
            host_id=host.id,
            host_name=host.name,
            host_email=host.email,
            purpose_of_visit=visit.purpose_of_visit,
            number_of_visitors=visit.number_of_visitors or 1,
            vehicle_number=visit.vehicle_number,
            requested_time=self.clock(),
            created_by=security.id,
            security_notes=req.security_notes,
        )
        request.id = create_document(self.store, VISITOR_REQUESTS, request)
        self.notify(
            host.id,
            "New Visitor Request",
            f"{request.visitor_name} wants to visit you. Purpose: {request.purpose_of_visit}",
            kind="visitor_request",
            sender=security.id,
            data={"requestId": request.id, "visitId": visit.id},
        )
        logger.info("Visitor request %s raised by %s for host %s", request.id, security.id, host.id)
        return request

    def _decide(self, request_id: str, host: User) -> VisitorRequest:
        request = self.get_request(request_id)
        if host.role != "admin" and request.host_id != host.id:
            raise Forbidden("Request is not addressed to you")
        if request.status != "pending":
            raise InvalidTransition(f"Request is already {request.status}")
        return request

    def approve_request(self, request_id: str, host: User) -> VisitorRequest:
        request = self._decide(request_id, host)
        self.workflow.approve(request.visit_id, host.email, check_in=False)
        return self._settle_approved(request, host)

    def reject_request(self, request_id: str, host: User, reason: Optional[str] = None) -> VisitorRequest:
        request = self._decide(request_id, host)
        reason = reason or "No reason given"
        self.workflow.reject(request.visit_id, host.email, reason)
        return self._settle_rejected(request, host, reason)

    def request_for_visit(self, visit_id: str) -> Optional[VisitorRequest]:
        docs = self.store.query(VISITOR_REQUESTS, [("visitId", "==", visit_id)], limit=1)
        return VisitorRequest.model_validate(docs[0]) if docs else None

    def sync_visit(self, visit: Visit, actor: User) -> Optional[VisitorRequest]:
        """Settle the request linked to ``visit`` once the visit has left ``pending``.

        Hosts can also decide a request-backed visit from their pending
        approvals list, and security can admit it with a QR scan; either way
        the request follows the visit and security is told.
        """
        request = self.request_for_visit(visit.id)
        if request is None or request.status != "pending" or visit.status == "pending":
            return request
        if visit.status == "rejected":
            return self._settle_rejected(request, actor, visit.rejection_reason or "No reason given")
        return self._settle_approved(request, actor)

    def _settle_approved(self, request: VisitorRequest, actor: User) -> VisitorRequest:
        doc = self.store.update(VISITOR_REQUESTS, request.id, {"status": "approved", "approvalTime": self.clock()})
        approved = VisitorRequest.model_validate(doc)
        if actor.id != approved.created_by:
            self.notify(
                approved.created_by,
                "Visitor Request Approved",
                f"{actor.name} approved {approved.visitor_name}'s visit request.",
                kind="visitor_approved",
                sender=actor.id,
                data={"requestId": approved.id, "visitId": approved.visit_id},
            )
        logger.info("Visitor request %s approved by %s", approved.id, actor.id)
        return approved

    def _settle_rejected(self, request: VisitorRequest, actor: User, reason: str) -> VisitorRequest:
        doc = self.store.update(VISITOR_REQUESTS, request.id, {"status": "rejected", "rejectionReason": reason})
        rejected = VisitorRequest.model_validate(doc)
        self.notify(
            rejected.created_by,
            "Visitor Request Rejected",
            f"{actor.name} rejected {rejected.visitor_name}'s visit request. Reason: {reason}",
            kind="visitor_rejected",
            sender=actor.id,
            data={"requestId": rejected.id, "visitId": rejected.visit_id, "reason": reason},
        )
        logger.info("Visitor request %s rejected by %s", rejected.id, actor.id)
        return rejected

    def _requests(self, *filters) -> List[VisitorRequest]:
        docs = self.store.query(VISITOR_REQUESTS, list(filters), order_by="requestedTime", descending=True)
        return [VisitorRequest.model_validate(d) for d in docs]

    def list_pending_for_host(self, host_id: str) -> List[VisitorRequest]:
        return self._requests(("hostId", "==", host_id), ("status", "==", "pending"))

    def list_approved_for_host(self, host_id: str) -> List[VisitorRequest]:
        return self._requests(("hostId", "==", host_id), ("status", "==", "approved"))

    def list_all(self) -> List[VisitorRequest]:
        return self._requests()
