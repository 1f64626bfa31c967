import pytest
from fastapi.testclient import TestClient

from stockledger.api.deps import get_ledger_service
from stockledger.main import app
from tests.conftest import PRODUCT, VENUE

BASE = f"/stock/{VENUE}/{PRODUCT}"


@pytest.fixture
def client(service):
    app.dependency_overrides[get_ledger_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_record_and_read_back(client):
    response = client.post(
        f"{BASE}/additions",
        json={"quantity": 20, "unit_cost": "1.50", "batch_number": "LOT-1", "entry_date": "2025-01-03"},
        headers={"X-Actor-Id": "kiosk-3"},
    )
    assert response.status_code == 201
    addition = response.json()
    assert addition["batch_number"] == "LOT-1"
    assert addition["balance"] == 20
    assert addition["actor"] == "kiosk-3"

    response = client.post(f"{BASE}/sales", json={"quantity": 8, "entry_date": "2025-01-04"})
    assert response.status_code == 201
    assert response.json()["deductions"][0]["batch_number"] == "LOT-1"

    balance = client.get(f"{BASE}/balance").json()
    assert balance["current_stock"] == 12

    view = client.get(f"{BASE}/months/2025/1").json()
    assert view["total_used_stock"] == 8
    assert len(view["entries"]) == 2

    history = client.get(f"{BASE}/history", params={"date_from": "2025-01-01", "kind": "SOLD"}).json()
    assert [entry["kind"] for entry in history] == ["SOLD"]

    batches = client.get(f"{BASE}/batches").json()
    assert batches[0]["remaining_quantity"] == 12

    summary = client.get(f"{BASE}/months/2025/1/summary")
    assert summary.status_code == 200
    assert summary.json()["sales_quantity"] == 8


def test_oversold_request_returns_allocation_detail(client):
    client.post(f"{BASE}/additions", json={"quantity": 2, "entry_date": "2025-01-03"})

    response = client.post(f"{BASE}/sales", json={"quantity": 5, "entry_date": "2025-01-04"})

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["requested"] == 5
    assert detail["allocatable"] == 2


def test_malformed_body_is_rejected(client):
    response = client.post(f"{BASE}/sales", json={"quantity": 0})
    assert response.status_code == 422


def test_invalid_month_is_a_bad_request(client):
    assert client.get(f"{BASE}/months/2025/13").status_code == 400
    assert client.get(f"{BASE}/months/2025/2/summary").status_code == 404


def test_entry_maintenance_status_codes(client):
    addition = client.post(f"{BASE}/additions", json={"quantity": 5, "entry_date": "2025-01-03"}).json()
    sale = client.post(f"{BASE}/sales", json={"quantity": 1, "entry_date": "2025-01-04"}).json()

    assert client.delete(f"{BASE}/entries/{addition['id']}").status_code == 409
    assert client.delete(f"{BASE}/entries/999").status_code == 404

    response = client.patch(f"{BASE}/entries/{addition['id']}", json={"notes": "shelf 2"})
    assert response.status_code == 200
    assert response.json()["notes"] == "shelf 2"

    assert client.delete(f"{BASE}/entries/{sale['id']}").status_code == 204
    assert client.get(f"{BASE}/balance").json()["current_stock"] == 5

    recalculated = client.post(f"{BASE}/recalculate")
    assert recalculated.status_code == 200
    assert recalculated.json()[0]["closing_balance"] == 5


def test_alerts_can_be_listed_and_resolved(client):
    client.post(f"{BASE}/additions", json={"quantity": 3, "entry_date": "2025-01-03"})

    alerts = client.get("/stock/alerts", params={"venue_id": VENUE}).json()
    assert [alert["alert_type"] for alert in alerts] == ["low_stock"]

    response = client.post(f"/stock/alerts/{alerts[0]['id']}/resolve", headers={"X-Actor-Id": "manager"})
    assert response.status_code == 200
    assert response.json()["is_active"] is False
    assert response.json()["resolved_by"] == "manager"
    assert client.get("/stock/alerts").json() == []
    assert client.post("/stock/alerts/999/resolve").status_code == 404


def test_expire_due_endpoint(client):
    client.post(
        f"{BASE}/additions",
        json={"quantity": 4, "expire_date": "2025-01-10", "entry_date": "2025-01-02"},
    )

    response = client.post(f"{BASE}/expire-due", json={"as_of": "2025-01-20"})

    assert response.status_code == 200
    assert [entry["entry_date"] for entry in response.json()] == ["2025-01-11"]
    assert client.get(f"{BASE}/balance").json()["current_stock"] == 0
