import json
from datetime import datetime
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient

from config import Settings
from conftest import visitor_details
from database import MemoryStore
from errors import StoreUnavailable
from main import create_app

IST = ZoneInfo("Asia/Kolkata")


class BrokenStore(MemoryStore):
    def insert(self, collection, data):
        raise StoreUnavailable(error="connection refused")

    def query(self, *args, **kwargs):
        raise RuntimeError("boom")


def register(client, **overrides):
    resp = client.post("/api/visitors/register", json=visitor_details(**overrides))
    assert resp.status_code == 201
    return resp.json()["data"]


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert "timestamp" in body


def test_unknown_route(client):
    resp = client.get("/api/nowhere")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Route not found"}


def test_register_then_host_approves(client, host):
    _, headers = host
    resp = client.post("/api/visitors/register", json=visitor_details())
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    visit = body["data"]
    assert visit["status"] == "pending"
    assert visit["isApproved"] is False
    assert visit["type"] == "registration"
    assert visit["createdAt"] == visit["entryTime"]

    resp = client.put(f"/api/visitors/approve/{visit['id']}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    approved = client.get(f"/api/visitors/{visit['id']}", headers=headers).json()["data"]
    assert approved["status"] == "checked_in"
    assert approved["isApproved"] is True
    assert approved["approvedBy"] == "prof.x@rvce.edu.in"


def test_register_validation_error(client):
    resp = client.post("/api/visitors/register", json={"name": "Asha Rao"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert {e["field"] for e in body["errors"]} >= {"contactNumber", "department", "whomToMeet", "purposeOfVisit"}


def test_register_store_unavailable(settings, clock):
    client = TestClient(create_app(settings, BrokenStore(), clock))
    resp = client.post("/api/visitors/register", json=visitor_details())
    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_unhandled_error_detail_only_outside_production(clock):
    dev = TestClient(create_app(Settings(), BrokenStore(), clock), raise_server_exceptions=False)
    resp = dev.post("/api/visitors/quick-checkin", json={"contactNumber": "9876543210"})
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "message": "Something went wrong!", "error": "boom"}

    prod = TestClient(create_app(Settings(environment="production"), BrokenStore(), clock), raise_server_exceptions=False)
    resp = prod.post("/api/visitors/quick-checkin", json={"contactNumber": "9876543210"})
    assert resp.status_code == 500
    assert resp.json()["error"] == "Internal Server Error"


def test_quick_check_in_unknown_phone(client):
    resp = client.post("/api/visitors/quick-checkin", json={"contactNumber": "0000000000"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["message"].startswith("No previous visits found")


def test_quick_check_in_returning_visitor(client):
    first = register(client)
    resp = client.post("/api/visitors/quick-checkin", json={"contactNumber": "9876543210"})
    assert resp.status_code == 201
    visit = resp.json()["data"]
    assert visit["id"] != first["id"]
    assert visit["type"] == "quick_checkin"
    assert visit["whomToMeet"] == first["whomToMeet"]
    assert visit["department"] == first["department"]


def test_cab_entry_notifies_host(client, host):
    host_user, headers = host
    resp = client.post("/api/visitors/cab-entry", json=visitor_details(
        cabProvider="Uber", driverName="Ravi", driverContact="9000000001", vehicleNumber="KA01AB1234",
    ))
    assert resp.status_code == 201
    assert resp.json()["data"]["type"] == "cab"

    notes = client.get("/api/notifications", headers=headers).json()["data"]
    assert [n["type"] for n in notes] == ["cab_entry"]
    assert notes[0]["to"] == host_user.id


def test_cab_entry_requires_driver(client):
    resp = client.post("/api/visitors/cab-entry", json=visitor_details(cabProvider="Uber"))
    assert resp.status_code == 400


def test_pending_approvals_requires_token(client):
    resp = client.get("/api/visitors/pending-approvals")
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_invalid_token_is_forbidden(client):
    resp = client.get("/api/visitors/pending-approvals", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 403


def test_pending_approvals_role_gate(client, security):
    _, headers = security
    assert client.get("/api/visitors/pending-approvals", headers=headers).status_code == 403


def test_pending_approvals_for_host(client, host, admin, clock):
    _, host_headers = host
    _, admin_headers = admin
    mine = register(client)
    clock.advance(minutes=1)
    register(client, whomToMeet="prof.y@rvce.edu.in")

    data = client.get("/api/visitors/pending-approvals", headers=host_headers).json()["data"]
    assert [v["id"] for v in data] == [mine["id"]]
    data = client.get("/api/visitors/pending-approvals", headers=admin_headers).json()["data"]
    assert len(data) == 2


def test_other_host_cannot_approve(client, other_host):
    _, headers = other_host
    visit = register(client)
    resp = client.put(f"/api/visitors/approve/{visit['id']}", headers=headers)
    assert resp.status_code == 403


def test_approve_then_reject_conflicts(client, host):
    _, headers = host
    visit = register(client)
    assert client.put(f"/api/visitors/approve/{visit['id']}", headers=headers).status_code == 200
    resp = client.put(f"/api/visitors/reject/{visit['id']}", json={"reason": "Busy"}, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["success"] is False
    assert client.put(f"/api/visitors/approve/{visit['id']}", headers=headers).status_code == 409


def test_reject(client, host):
    _, headers = host
    visit = register(client)
    resp = client.put(f"/api/visitors/reject/{visit['id']}", json={"reason": "Out of station"}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "rejected"
    assert data["rejectionReason"] == "Out of station"


def test_approve_missing_visit(client, host):
    _, headers = host
    assert client.put("/api/visitors/approve/missing", headers=headers).status_code == 404


def test_security_check_in_and_out(client, app, host, security):
    _, host_headers = host
    _, guard_headers = security
    visit = register(client)
    app.state.workflow.approve(visit["id"], "prof.x@rvce.edu.in", check_in=False)

    assert client.put(f"/api/visitors/checkin/{visit['id']}", headers=host_headers).status_code == 403
    resp = client.put(f"/api/visitors/checkin/{visit['id']}", headers=guard_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["checkedInBy"] == "gate1@rvce.edu.in"

    resp = client.put(f"/api/visitors/checkout/{visit['id']}", headers=guard_headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "checked_out"
    assert data["exitTime"] >= data["entryTime"]


def test_checkout_before_checkin_conflicts(client, security):
    _, headers = security
    visit = register(client)
    assert client.put(f"/api/visitors/checkout/{visit['id']}", headers=headers).status_code == 409


def test_scan(client, app, security):
    _, headers = security
    visit = register(client)
    app.state.workflow.approve(visit["id"], "prof.x@rvce.edu.in", check_in=False)
    payload = json.dumps({"id": visit["id"], "type": "visitor_entry"})
    resp = client.post("/api/visitors/scan", json={"payload": payload}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "checked_in"

    resp = client.post("/api/visitors/scan", json={"payload": "unknown-id"}, headers=headers)
    assert resp.status_code == 404


def test_todays_visitors_midnight_boundary(client, host, clock):
    _, headers = host
    clock.now = datetime(2026, 10, 16, 23, 59, 59, tzinfo=IST)
    register(client, name="Late Visitor")
    clock.now = datetime(2026, 10, 17, 0, 0, 0, tzinfo=IST)
    register(client, name="Early Visitor")
    clock.now = datetime(2026, 10, 17, 10, 0, tzinfo=IST)

    assert client.get("/api/visitors/today").status_code == 401
    resp = client.get("/api/visitors/today", headers=headers)
    assert resp.status_code == 200
    assert [v["name"] for v in resp.json()["data"]] == ["Early Visitor"]


def test_qr_and_pass(client):
    visit = register(client)
    resp = client.get(f"/api/visitors/{visit['id']}/qr")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert resp.content.startswith(b"\x89PNG")

    resp = client.get(f"/api/visitors/{visit['id']}/pass")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert resp.content.startswith(b"%PDF")

    assert client.get("/api/visitors/missing/qr").status_code == 404


def test_dashboard_stats(client, host):
    _, headers = host
    register(client)
    data = client.get("/api/dashboard/stats", headers=headers).json()["data"]
    assert data == {"totalVisitors": 1, "todaysVisitors": 1, "pendingApprovals": 1, "checkedInVisitors": 0}


def test_auth_endpoints(client):
    resp = client.post("/api/auth/register", json={
        "name": "Gate Officer", "email": "gate2@rvce.edu.in", "password": "secret123", "role": "security",
    })
    assert resp.status_code == 201
    assert "passwordHash" not in resp.json()["data"]["user"]

    assert client.post("/api/auth/login", json={"email": "gate2@rvce.edu.in", "password": "bad"}).status_code == 401
    resp = client.post("/api/auth/login", json={"email": "gate2@rvce.edu.in", "password": "secret123"})
    assert resp.status_code == 200
    headers = {"Authorization": f"Bearer {resp.json()['data']['token']}"}

    me = client.get("/api/auth/me", headers=headers).json()["data"]
    assert me["role"] == "security"
    assert me["lastLogin"] is not None

    resp = client.put("/api/auth/me", json={"department": "Main Gate"}, headers=headers)
    assert resp.json()["data"]["department"] == "Main Gate"


def test_self_registration_cannot_claim_admin(client):
    resp = client.post("/api/auth/register", json={
        "name": "Mallory", "email": "mallory@rvce.edu.in", "password": "secret123", "role": "admin",
    })
    assert resp.status_code == 400


def test_admin_seeded_on_startup(clock):
    settings = Settings(admin_email="admin@rvce.edu.in", admin_password="adminpass")
    with TestClient(create_app(settings, MemoryStore(), clock)) as client:
        resp = client.post("/api/auth/login", json={"email": "admin@rvce.edu.in", "password": "adminpass"})
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["role"] == "admin"


def test_short_admin_password_does_not_block_startup(clock):
    settings = Settings(admin_email="admin@rvce.edu.in", admin_password="abc")
    with TestClient(create_app(settings, MemoryStore(), clock)) as client:
        assert client.get("/api/health").status_code == 200
        resp = client.post("/api/auth/login", json={"email": "admin@rvce.edu.in", "password": "abc"})
        assert resp.status_code == 401


def test_scan_registration_pass(client, security):
    _, headers = security
    visit = register(client)
    payload = json.dumps({"id": visit["id"], "type": "visitor_entry"})

    resp = client.post("/api/visitors/scan", json={"payload": payload}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "checked_in"
    assert data["checkedInBy"] == "gate1@rvce.edu.in"

    resp = client.post("/api/visitors/scan", json={"payload": payload}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["entryTime"] == data["entryTime"]


def test_scan_after_host_approval(client, host, security):
    _, host_headers = host
    _, guard_headers = security
    visit = register(client)
    assert client.put(f"/api/visitors/approve/{visit['id']}", headers=host_headers).status_code == 200

    resp = client.post("/api/visitors/scan", json={"payload": visit["id"]}, headers=guard_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "checked_in"
