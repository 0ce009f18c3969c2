import xml.etree.ElementTree as ET
from datetime import date

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)

COMPANY = 61


def _connect(admin, **overrides):
    body = {
        "company_name": "Acme Builders",
        "wc_username": "acme-agent",
        "wc_secret": "s3cret-passphrase",
        **overrides,
    }
    return client.put("/quickbooks/connection", json=body, headers=admin)


def test_connection_requires_admin_and_hides_secret(auth_headers):
    manager = auth_headers(COMPANY)
    admin = auth_headers(COMPANY, role="ADMIN", user_id="admin-1")

    assert client.get("/quickbooks/connection", headers=manager).status_code == 404
    assert _connect(manager).status_code == 403

    created = _connect(admin, sync_pay_stubs=True)
    assert created.status_code == 200, created.text
    body = created.json()
    assert body["connection_status"] == "pending"
    assert body["sync_pay_stubs"] is True
    assert body["sync_time_entries"] is True
    assert "wc_secret" not in body

    updated = client.put(
        "/quickbooks/connection",
        json={"company_name": "Acme Builders LLC", "wc_username": "acme-agent", "sync_interval_minutes": 30},
        headers=admin,
    )
    assert updated.status_code == 200
    assert updated.json()["sync_interval_minutes"] == 30
    assert updated.json()["sync_pay_stubs"] is True


def test_connection_create_without_secret_is_a_conflict(auth_headers):
    admin = auth_headers(COMPANY, role="ADMIN")
    resp = client.put(
        "/quickbooks/connection",
        json={"company_name": "Acme", "wc_username": "acme-agent"},
        headers=admin,
    )
    assert resp.status_code == 409


def test_agent_username_is_unique_across_companies(auth_headers):
    assert _connect(auth_headers(COMPANY, role="ADMIN")).status_code == 200
    clash = _connect(auth_headers(COMPANY + 1, role="ADMIN"))
    assert clash.status_code == 409


def test_qwc_download(auth_headers):
    admin = auth_headers(COMPANY, role="ADMIN")
    _connect(admin)

    resp = client.get(
        "/quickbooks/connection/qwc",
        params={"app_url": "https://payroll.example.com/", "app_name": "Acme Payroll"},
        headers=admin,
    )
    assert resp.status_code == 200
    assert 'filename="Acme_Payroll.qwc"' in resp.headers["content-disposition"]

    root = ET.fromstring(resp.content)
    assert root.findtext("AppURL") == "https://payroll.example.com/qbwc"
    assert root.findtext("UserName") == "acme-agent"
    assert root.findtext("OwnerID").startswith("{")
    assert root.findtext("Scheduler/RunEveryNMinutes") == "60"

    again = client.get(
        "/quickbooks/connection/qwc",
        params={"app_url": "https://payroll.example.com", "app_name": "Acme Payroll"},
        headers=admin,
    )
    assert ET.fromstring(again.content).findtext("FileID") == root.findtext("FileID")


def test_mapping_lifecycle_and_unmapped_list(employee_factory, auth_headers):
    manager = auth_headers(COMPANY)
    mapped = employee_factory(company_id=COMPANY, name="Ann Mapped")
    unmapped = employee_factory(company_id=COMPANY, name="Zed Unmapped")

    created = client.post(
        "/quickbooks/mappings",
        json={"employee_id": mapped.id, "qb_name": "Ann M.", "qb_list_id": "LIST-1"},
        headers=manager,
    )
    assert created.status_code == 200, created.text
    mapping_id = created.json()["id"]
    assert created.json()["is_synced"] is True

    duplicate = client.post(
        "/quickbooks/mappings",
        json={"employee_id": mapped.id, "qb_name": "Ann again"},
        headers=manager,
    )
    assert duplicate.status_code == 409

    missing = client.post(
        "/quickbooks/mappings",
        json={"employee_id": 999999, "qb_name": "Ghost"},
        headers=manager,
    )
    assert missing.status_code == 404

    unmapped_rows = client.get("/quickbooks/unmapped", headers=manager).json()
    assert [row["id"] for row in unmapped_rows] == [unmapped.id]

    patched = client.patch(f"/quickbooks/mappings/{mapping_id}", json={"qb_list_id": "LIST-2"}, headers=manager)
    assert patched.json()["qb_list_id"] == "LIST-2"
    assert patched.json()["edit_sequence"] is None

    removed = client.delete(f"/quickbooks/mappings/{mapping_id}", headers=manager)
    assert removed.json()["is_active"] is False
    assert client.get("/quickbooks/mappings", headers=manager).json() == []
    assert len(client.get("/quickbooks/unmapped", headers=manager).json()) == 2


def test_sync_enqueue_endpoints_respect_connection_toggles(employee_factory, auth_headers):
    manager = auth_headers(COMPANY)
    admin = auth_headers(COMPANY, role="ADMIN")
    emp = employee_factory(company_id=COMPANY)

    assert client.post(f"/quickbooks/employees/{emp.id}/sync", headers=manager).status_code == 404

    _connect(admin)
    item = client.post(f"/quickbooks/employees/{emp.id}/sync", headers=manager)
    assert item.status_code == 200
    assert item.json()["type"] == "employee"
    assert item.json()["action"] == "add"

    roster = client.post("/quickbooks/employees/import", headers=manager)
    assert roster.json()["action"] == "query"

    paychecks = {"from_date": str(date(2024, 1, 1)), "to_date": str(date(2024, 1, 14))}
    assert client.post("/quickbooks/paychecks/query", json=paychecks, headers=manager).status_code == 409

    _connect(admin, sync_pay_stubs=True)
    queued = client.post("/quickbooks/paychecks/query", json=paychecks, headers=manager)
    assert queued.status_code == 200
    assert queued.json()["type"] == "paycheck_query"

    stats = client.get("/sync/stats", headers=manager).json()
    assert stats["pending"] == 3
