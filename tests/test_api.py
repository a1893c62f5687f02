"""
End-to-end checks of the HTTP surface: request validation, error bodies and
the record -> invoice -> pay -> report flow.
"""
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from db import get_session
from main import app
from rates import resolver


@pytest.fixture()
def client(engine):
  def override():
    with Session(engine) as s:
      yield s

  resolver.invalidate()
  app.dependency_overrides[get_session] = override
  yield TestClient(app)
  app.dependency_overrides.clear()
  resolver.invalidate()


@pytest.fixture()
def seeded(client):
  r = client.post("/api/seed")
  assert r.json() == {"ok": True, "seeded": True}
  subs = {s["name"]: s for s in client.get("/api/subscriptions").json()}
  customers = {c["name"]: c for c in client.get("/api/customers").json()}
  return subs, customers


def test_health(client):
  r = client.get("/health")
  assert r.status_code == 200
  assert r.json()["ok"] is True


def test_seed_runs_once(client, seeded):
  assert client.post("/api/seed").json() == {"ok": True, "seeded": False}


def test_billing_flow(client, seeded):
  subs, customers = seeded
  budi = customers["Budi Santoso"]

  r = client.get("/api/water-rates/current", params={"subscription_id": subs["Household"]["id"], "as_of": "2024-01-15"})
  assert r.status_code == 200
  assert r.json()["amount"] == 5000

  r = client.post("/api/water-usage", json={"customer_id": budi["id"], "usage_month": "2024-01", "meter_end": 40})
  assert r.status_code == 200
  usage = r.json()
  assert usage["usage_month"] == "2024-01-01"
  assert usage["usage_m3"] == 40

  r = client.post("/api/invoices", json={"customer_id": budi["id"], "usage_id": usage["id"], "issue_date": "2024-01-31"})
  assert r.status_code == 200
  invoice = r.json()
  # registration 150,000 + monthly 50,000 + maintenance 10,000 + 40 m3 x 5,000
  assert invoice["total_amount"] == 410000
  assert invoice["status"] == "unpaid"
  assert invoice["due_date"] == "2024-02-14"
  assert len(invoice["items"]) == 4

  r = client.post("/api/payments", json={
    "invoice_id": invoice["id"], "amount": 100000, "method": "bank_transfer", "reference_number": "TRX1",
  })
  assert r.status_code == 200
  body = r.json()
  assert body["payment"]["status"] == "completed"
  assert body["invoice"]["status"] == "partial"
  assert body["invoice"]["amount_due"] == 310000

  r = client.get("/api/reports/outstanding", params={"today": "2024-03-20"})
  report = r.json()
  assert report["total_outstanding"] == 310000
  assert report["invoices"][0]["bucket"] == "31-60"

  r = client.post(f"/api/payments/{body['payment']['id']}/void", json={"reason": "bounced"})
  assert r.status_code == 200
  assert r.json()["status"] == "unpaid"
  assert r.json()["amount_due"] == 410000

  r = client.get(f"/api/invoices/{invoice['id']}/payments")
  assert [p["status"] for p in r.json()] == ["voided"]


def test_error_bodies(client, seeded):
  subs, customers = seeded
  budi = customers["Budi Santoso"]

  r = client.get("/api/water-rates/current", params={"subscription_id": subs["Household"]["id"], "as_of": "2022-01-01"})
  assert r.status_code == 404
  assert r.json()["error"] == "rate_not_found"

  client.post("/api/water-usage", json={"customer_id": budi["id"], "usage_month": "2024-01", "meter_end": 40})
  r = client.post("/api/water-usage", json={"customer_id": budi["id"], "usage_month": "2024-02", "meter_end": 30})
  assert r.status_code == 422
  assert r.json()["error"] == "invalid_reading"

  usage = client.get("/api/water-usage", params={"customer_id": budi["id"]}).json()[0]
  invoice = client.post("/api/invoices", json={"customer_id": budi["id"], "usage_id": usage["id"]}).json()

  r = client.post("/api/payments", json={"invoice_id": invoice["id"], "amount": 1000, "method": "card"})
  assert r.status_code == 422
  assert r.json()["error"] == "validation_error"

  r = client.post("/api/payments", json={"invoice_id": invoice["id"], "amount": 1000, "method": "cheque"})
  assert r.status_code == 422

  r = client.post("/api/payments", json={"invoice_id": invoice["id"], "amount": invoice["total_amount"] + 1, "method": "cash"})
  assert r.status_code == 409
  assert r.json()["error"] == "overpayment"

  r = client.post(f"/api/invoices/{invoice['id']}/void")
  assert r.json()["status"] == "void"
  r = client.post("/api/payments", json={"invoice_id": invoice["id"], "amount": 1000, "method": "cash"})
  assert r.status_code == 409
  assert r.json()["error"] == "state_error"

  r = client.get("/api/invoices/9999")
  assert r.status_code == 404


def test_rate_conflict(client, seeded):
  subs, _ = seeded
  r = client.post("/api/water-rates", json={
    "subscription_type_id": subs["Household"]["id"], "amount": 5200, "effective_date": "2024-01-01",
  })
  assert r.status_code == 409
  assert r.json()["error"] == "rate_conflict"


def test_monthly_run_and_sweep(client, seeded):
  _, customers = seeded
  for c in customers.values():
    client.post("/api/water-usage", json={"customer_id": c["id"], "usage_month": "2024-01", "meter_end": 20})

  r = client.post("/api/invoices/generate-monthly", json={"usage_month": "2024-01", "issue_date": "2024-01-31", "workers": 1})
  assert r.status_code == 200
  assert len(r.json()["generated"]) == 2
  assert r.json()["failed"] == []

  r = client.post("/api/invoices/refresh-status", params={"today": "2024-03-01"})
  assert r.json() == {"ok": True, "overdue": 2}
  assert {i["status"] for i in client.get("/api/invoices").json()} == {"overdue"}


def test_rate_description_update(client, seeded):
  subs, _ = seeded
  rate = client.get("/api/water-rates/history", params={"subscription_id": subs["Business"]["id"]}).json()[0]
  r = client.put(f"/api/water-rates/{rate['id']}", json={"description": "2024 commercial tariff"})
  assert r.status_code == 200
  assert r.json()["description"] == "2024 commercial tariff"
  assert r.json()["amount"] == rate["amount"]

  r = client.put("/api/water-rates/9999", json={"description": "x"})
  assert r.status_code == 404


def test_payment_lookup_and_receipt(client, seeded):
  _, customers = seeded
  budi = customers["Budi Santoso"]
  usage = client.post("/api/water-usage", json={"customer_id": budi["id"], "usage_month": "2024-01", "meter_end": 40}).json()
  invoice = client.post("/api/invoices", json={"customer_id": budi["id"], "usage_id": usage["id"], "issue_date": "2024-01-31"}).json()
  payment = client.post("/api/payments", json={
    "invoice_id": invoice["id"], "amount": 100000, "method": "cash", "payment_date": "2024-02-01",
  }).json()["payment"]

  r = client.get(f"/api/payments/{payment['id']}")
  assert r.status_code == 200
  assert r.json()["amount"] == 100000

  r = client.get(f"/api/payments/{payment['id']}/receipt")
  assert r.status_code == 200
  receipt = r.json()
  assert receipt["receipt_number"] == f"RCP-202402-{payment['id']:06d}"
  assert receipt["invoice"]["amount_due"] == 310000
  assert receipt["customer"]["meter_number"] == "MTR-0001"

  client.post(f"/api/payments/{payment['id']}/void")
  r = client.get(f"/api/payments/{payment['id']}/receipt")
  assert r.status_code == 409
  assert r.json()["error"] == "state_error"

  assert client.get("/api/payments/9999").status_code == 404


def test_revenue_and_usage_reports(client, seeded):
  _, customers = seeded
  for c in customers.values():
    client.post("/api/water-usage", json={"customer_id": c["id"], "usage_month": "2024-01", "meter_end": 20})
  client.post("/api/invoices/generate-monthly", json={"usage_month": "2024-01", "issue_date": "2024-01-31", "workers": 1})

  revenue = client.get("/api/reports/revenue").json()
  # household 150,000 + 50,000 + 10,000 + 20 x 5,000; business 500,000 + 150,000 + 25,000 + 20 x 8,500
  assert revenue["total_revenue"] == 310000 + 845000
  assert revenue["monthly"] == [{"month": "2024-01", "revenue": 1155000, "invoices": 2}]
  assert [t["subscription_type"] for t in revenue["by_subscription_type"]] == ["Business", "Household"]

  usage = client.get("/api/reports/usage", params={"limit": 1}).json()
  assert usage["total_usage"] == 40
  assert usage["average_usage"] == 20.0
  assert len(usage["high_consumers"]) == 1

  assert client.get("/api/reports/usage", params={"limit": 0}).status_code == 422
