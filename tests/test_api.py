from datetime import timedelta
from decimal import Decimal

from fastapi.testclient import TestClient

from freelancedesk.auth import TokenSubject, create_access_token

QUOTE = {
    "title": "Brand refresh",
    "items": [{"description": "Logo", "quantity": "2", "unit_price": "100", "tax_rate": "10"}],
}


def _create_quote(client: TestClient, tenant) -> dict:
    response = client.post("/api/quotes", json={**QUOTE, "client_id": tenant.client_id})
    assert response.status_code == 201
    return response.json()


def _sent_invoice(client: TestClient, tenant, amount="500") -> dict:
    response = client.post(
        "/api/invoices",
        json={
            "client_id": tenant.client_id,
            "title": "Retainer",
            "items": [{"description": "Hours", "unit_price": amount}],
        },
    )
    assert response.status_code == 201
    invoice_id = response.json()["id"]
    response = client.post(f"/api/invoices/{invoice_id}/send")
    assert response.status_code == 200
    return response.json()


def test_requires_bearer_token(anonymous_client: TestClient) -> None:
    response = anonymous_client.get("/api/quotes")
    assert response.status_code == 401


def test_rejects_expired_token(anonymous_client: TestClient, tenant) -> None:
    token = create_access_token(TokenSubject(user_id=tenant.user_id), expires_delta=timedelta(minutes=-5))
    response = anonymous_client.get("/api/quotes", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_create_and_fetch_quote(client: TestClient, tenant) -> None:
    quote = _create_quote(client, tenant)
    assert quote["status"] == "draft"
    assert quote["quote_number"] == "QUO-202610-001"
    assert Decimal(quote["total_amount"]) == Decimal("220.00")
    assert Decimal(quote["items"][0]["total"]) == Decimal("220.00")

    fetched = client.get(f"/api/quotes/{quote['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == quote["id"]

    listed = client.get("/api/quotes", params={"status": "draft"})
    assert [q["id"] for q in listed.json()] == [quote["id"]]


def test_error_mapping(client: TestClient, tenant) -> None:
    quote = _create_quote(client, tenant)

    assert client.get("/api/quotes/not-a-uuid").status_code == 400
    assert client.get("/api/quotes/00000000-0000-4000-8000-000000000000").status_code == 404

    client.post(f"/api/quotes/{quote['id']}/send")
    response = client.post(f"/api/quotes/{quote['id']}/send")
    assert response.status_code == 409
    assert response.json() == {"detail": "Only draft quotes can be sent"}


def test_other_tenant_gets_404(client: TestClient, tenant, other_tenant) -> None:
    quote = _create_quote(client, tenant)
    token = create_access_token(TokenSubject(user_id=other_tenant.user_id))
    response = client.get(f"/api/quotes/{quote['id']}", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 404


def test_public_quote_flow_and_conversion(client: TestClient, anonymous_client: TestClient, tenant) -> None:
    quote = _create_quote(client, tenant)
    client.post(f"/api/quotes/{quote['id']}/send")
    public_hash = quote["public_hash"]

    viewed = anonymous_client.get(f"/api/public/quotes/{public_hash}", headers={"User-Agent": "Browser/1.0"})
    assert viewed.status_code == 200
    assert viewed.json()["viewed_at"] is not None

    accepted = anonymous_client.post(f"/api/public/quotes/{public_hash}/accept")
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert anonymous_client.post(f"/api/public/quotes/{public_hash}/accept").status_code == 409
    assert anonymous_client.post(f"/api/public/quotes/{public_hash}/reject").status_code == 409

    history = client.get(f"/api/quotes/{quote['id']}/history").json()
    assert [h["action"] for h in history] == ["accepted", "viewed", "sent", "created"]
    assert history[1]["user_agent"] == "Browser/1.0"

    converted = client.post(f"/api/quotes/{quote['id']}/convert")
    assert converted.status_code == 201
    invoice = converted.json()
    assert invoice["quote_id"] == quote["id"]
    assert invoice["status"] == "draft"
    assert [i["description"] for i in invoice["items"]] == ["Logo"]

    total = client.get("/api/quotes/accepted-total").json()
    assert Decimal(total["total"]) == Decimal("220.00")


def test_unknown_public_hash(anonymous_client: TestClient) -> None:
    assert anonymous_client.get(f"/api/public/quotes/{'a' * 32}").status_code == 404
    assert anonymous_client.get(f"/api/public/invoices/{'a' * 32}").status_code == 404


def test_payment_flow(client: TestClient, tenant) -> None:
    invoice = _sent_invoice(client, tenant)
    url = f"/api/invoices/{invoice['id']}/payments"

    too_much = client.post(url, json={"amount": "600", "payment_method": "card"})
    assert too_much.status_code == 400
    assert "exceeds remaining balance" in too_much.json()["detail"]

    paid = client.post(url, json={"amount": "500", "payment_method": "card", "transaction_id": "ch_1"})
    assert paid.status_code == 201
    payment_id = paid.json()["id"]

    refreshed = client.get(f"/api/invoices/{invoice['id']}").json()
    assert refreshed["status"] == "paid"
    assert Decimal(refreshed["balance_due"]) == Decimal("0")
    assert refreshed["paid_date"] == "2026-10-15"

    assert client.delete(f"{url}/{payment_id}").status_code == 409
    assert client.post(f"/api/invoices/{invoice['id']}/cancel").status_code == 409

    summary = client.get(f"/api/invoices/{invoice['id']}/summary").json()
    assert summary["payment_count"] == 1
    assert summary["is_partially_paid"] is False

    totals = client.get("/api/invoices/totals").json()
    assert Decimal(totals["total_paid"]) == Decimal("500")


def test_invoice_items_and_public_view(client: TestClient, anonymous_client: TestClient, tenant) -> None:
    response = client.post("/api/invoices", json={"client_id": tenant.client_id, "title": "Build"})
    invoice = response.json()
    url = f"/api/invoices/{invoice['id']}/items"

    first = client.post(url, json={"description": "Setup", "unit_price": "80"}).json()
    second = client.post(url, json={"description": "Hosting", "unit_price": "20"}).json()
    reordered = client.post(f"{url}/reorder", json={"item_ids": [second["id"], first["id"]]})
    assert [i["description"] for i in reordered.json()] == ["Hosting", "Setup"]

    assert client.delete(f"{url}/{first['id']}").status_code == 204
    assert Decimal(client.get(f"/api/invoices/{invoice['id']}").json()["total_amount"]) == Decimal("20")

    client.post(f"/api/invoices/{invoice['id']}/send")
    viewed = anonymous_client.get(f"/api/public/invoices/{invoice['public_hash']}")
    assert viewed.status_code == 200
    assert viewed.json()["viewed_at"] is not None

    assert client.post(url, json={"description": "Late"}).status_code == 409


def test_aging_and_overdue_routes(client: TestClient, clock, tenant) -> None:
    invoice = _sent_invoice(client, tenant)
    clock.advance(days=40)

    overdue = client.get("/api/invoices/overdue").json()
    assert [i["id"] for i in overdue] == [invoice["id"]]

    aging = client.get("/api/invoices/aging").json()
    assert aging[0]["aging_category"] == "1-30 Days"
    assert aging[0]["days_overdue"] == 10
