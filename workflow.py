"""
Visitor workflow engine.

A visit moves through these states:

    pending --approve(check_in=False)--> approved --check_in--> checked_in --check_out--> checked_out
    pending --approve(check_in=True)---------------------------> checked_in
    pending --scan---------------------------------------------> checked_in
    pending --reject--> rejected

``rejected`` and ``checked_out`` are terminal. Approve and reject are only
accepted on pending visits. A QR scan admits pending and approved visits
and is a no-op on one already checked in. Any other action from the wrong
state raises ``InvalidTransition`` instead of silently rewriting the record.
"""
import logging
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from database import VISITS, DocumentStore, create_document, now_utc
from errors import InvalidTransition, NotFound
from qr import parse_qr_payload
from schemas import CabEntry, Visit, VisitorRegistration

logger = logging.getLogger(__name__)

# fields that belong to one visit and are never copied into a quick check-in
LIFECYCLE_FIELDS = (
    "id",
    "status",
    "type",
    "createdAt",
    "entryTime",
    "exitTime",
    "isApproved",
    "approvedBy",
    "approvedAt",
    "rejectedBy",
    "rejectedAt",
    "rejectionReason",
    "checkedInBy",
    "checkedOutBy",
    "notificationSent",
)

# only meaningful on the cab visit they were recorded for
CAB_FIELDS = ("cabProvider", "driverName", "driverContact")


def day_bounds(moment: datetime, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    local_day = moment.astimezone(tz).date()
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


class VisitorWorkflow:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = now_utc, timezone: str = "Asia/Kolkata"):
        self.store = store
        self.clock = clock
        self.tz = ZoneInfo(timezone)

    # -------------------- Lookups --------------------
    def get(self, visit_id: str) -> Visit:
        try:
            return Visit.model_validate(self.store.get(VISITS, visit_id))
        except NotFound:
            raise NotFound("Visitor not found")

    def lookup_by_qr_payload(self, payload: str) -> Visit:
        return self.get(parse_qr_payload(payload))

    def latest_for_phone(self, contact_number: str) -> Optional[Dict[str, Any]]:
        found = self.store.query(
            VISITS,
            [("contactNumber", "==", contact_number.strip())],
            order_by="createdAt",
            descending=True,
            limit=1,
        )
        return found[0] if found else None

    def todays_visits(self) -> List[Visit]:
        start, end = day_bounds(self.clock(), self.tz)
        docs = self.store.query(
            VISITS,
            [("createdAt", ">=", start), ("createdAt", "<", end)],
            order_by="createdAt",
            descending=True,
        )
        return [Visit.model_validate(d) for d in docs]

    def pending_approvals(self, host_email: Optional[str] = None) -> List[Visit]:
        docs = self.store.query(
            VISITS,
            [("status", "==", "pending"), ("isApproved", "==", False)],
            order_by="createdAt",
            descending=True,
        )
        visits = [Visit.model_validate(d) for d in docs]
        if host_email:
            email = host_email.lower()
            visits = [
                v for v in visits
                if email in ((v.whom_to_meet or "").lower(), (v.whom_to_meet_email or "").lower())
            ]
        return visits

    def stats(self) -> Dict[str, int]:
        return {
            "totalVisitors": len(self.store.query(VISITS)),
            "todaysVisitors": len(self.todays_visits()),
            "pendingApprovals": len(self.pending_approvals()),
            "checkedInVisitors": len(self.store.query(VISITS, [("status", "==", "checked_in")])),
        }

    # -------------------- Creation --------------------
    def _create(self, details: Dict[str, Any], visit_type: str) -> Visit:
        now = self.clock()
        visit = Visit.model_validate({
            **details,
            "createdAt": now,
            "entryTime": now,
            "status": "pending",
            "type": visit_type,
            "isApproved": False,
            "notificationSent": False,
        })
        visit.id = create_document(self.store, VISITS, visit)
        logger.info("Created %s visit %s", visit_type, visit.id)
        return visit

    def register(self, details: VisitorRegistration) -> Visit:
        return self._create(details.model_dump(by_alias=True, exclude_none=True), "registration")

    def register_cab(self, details: CabEntry) -> Visit:
        return self._create(details.model_dump(by_alias=True, exclude_none=True), "cab")

    def quick_check_in(self, contact_number: str) -> Visit:
        last = self.latest_for_phone(contact_number)
        if last is None:
            raise NotFound("No previous visits found. Please register as a new visitor.")
        details = {k: v for k, v in last.items() if k not in LIFECYCLE_FIELDS + CAB_FIELDS}
        visit = self._create(details, "quick_checkin")
        logger.info("Quick check-in %s cloned from %s", visit.id, last["id"])
        return visit

    # -------------------- Transitions --------------------
    def _transition(self, visit_id: str, allowed: Iterable[str], action: str, actor: str, changes: Dict[str, Any]) -> Visit:
        current = self.get(visit_id)
        if current.status not in allowed:
            raise InvalidTransition(f"Cannot {action} a visit that is {current.status}")
        doc = self.store.update(VISITS, visit_id, changes)
        logger.info("Visit %s: %s -> %s (%s by %s)", visit_id, current.status, doc["status"], action, actor)
        return Visit.model_validate(doc)

    def approve(self, visit_id: str, approver: str, check_in: bool = True) -> Visit:
        now = self.clock()
        changes: Dict[str, Any] = {
            "isApproved": True,
            "approvedBy": approver,
            "approvedAt": now,
            "status": "approved",
        }
        if check_in:
            changes.update({"status": "checked_in", "checkedInBy": approver})
        return self._transition(visit_id, ("pending",), "approve", approver, changes)

    def reject(self, visit_id: str, approver: str, reason: Optional[str] = None) -> Visit:
        changes = {
            "status": "rejected",
            "rejectedBy": approver,
            "rejectedAt": self.clock(),
            "rejectionReason": reason or "",
        }
        return self._transition(visit_id, ("pending",), "reject", approver, changes)

    def check_in(self, visit_id: str, security: str) -> Visit:
        changes = {"status": "checked_in", "entryTime": self.clock(), "checkedInBy": security}
        return self._transition(visit_id, ("approved",), "check in", security, changes)

    def check_out(self, visit_id: str, security: str) -> Visit:
        changes = {"status": "checked_out", "exitTime": self.clock(), "checkedOutBy": security}
        return self._transition(visit_id, ("checked_in",), "check out", security, changes)

    def scan(self, payload: str, security: str) -> Visit:
        """Check in the visit a gate QR code points at.

        The pass is handed out at registration, so a scan admits a visit that
        is still pending as well as an approved one. Scanning a visitor who is
        already inside returns the visit unchanged.
        """
        visit = self.lookup_by_qr_payload(payload)
        if visit.status == "checked_in":
            return visit
        changes = {"status": "checked_in", "entryTime": self.clock(), "checkedInBy": security}
        return self._transition(visit.id, ("pending", "approved"), "check in", security, changes)
