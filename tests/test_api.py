from io import BytesIO

import pytest
from openpyxl import Workbook

from weekly_orders.services import weekly_summary

from conftest import TEST_WEEK


def counts(summary, day):
    for item in summary["orders"]:
        if item["day"] == day:
            return item["counts"]
    return {}


def comments(summary, day):
    for item in summary["orders"]:
        if item["day"] == day:
            return item["comments"]
    return []


def click(client, user, day, option, endpoint="increment", **extra):
    payload = {"user_name": user, "day": day, "option": option, **extra}
    return client.post(f"/api/orders/{endpoint}", json=payload)


# --- Root & health ---

def test_root_and_health(client):
    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["week_start"] == TEST_WEEK

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "operational"


def test_users(client):
    assert client.get("/api/users").json()["users"] == ["user1", "user2", "user3"]


# --- Menu ---

def test_default_menu_before_upload(client):
    data = client.get("/api/menu").json()
    assert data["source"] == "default"
    assert data["menu"]["Lunes"] == ["Opción 1", "Opción 2", "Opción 3"]


def test_publish_menu_normalizes_days(client, menu_payload):
    resp = client.post("/api/menu", json=menu_payload)
    assert resp.status_code == 200
    data = resp.json()
    assert list(data["menu"]) == ["Lunes", "Martes", "Miércoles", "Jueves", "Viernes"]
    assert data["reset"]["seeded"] is True
    assert client.get("/api/menu").json()["menu"] == data["menu"]


def test_invalid_menu_is_422(client):
    resp = client.post("/api/menu", json={"menu": {"SABADO": ["Asado"]}})
    assert resp.status_code == 422
    assert resp.json()["success"] is False


def test_menu_workbook_upload(client):
    wb = Workbook()
    ws = wb.active
    ws.append(["MENU"])
    ws.append(["DIA", "OPCION 1"])
    for day, option in [("Lunes", "Milanesa"), ("Martes", "Pastas"), ("Miércoles", "Pollo"),
                        ("Jueves", "Guiso"), ("Viernes", "Pizza")]:
        ws.append([day, option])
    buffer = BytesIO()
    wb.save(buffer)

    resp = client.post(
        "/api/menu/upload",
        files={"file": ("menu.xlsx", buffer.getvalue(), "application/octet-stream")},
    )
    assert resp.status_code == 200
    assert resp.json()["menu"]["Miércoles"] == ["Pollo"]


def test_unreadable_workbook_is_422(client):
    resp = client.post("/api/menu/upload", files={"file": ("menu.xlsx", b"garbage", "application/octet-stream")})
    assert resp.status_code == 422


# --- Orders & summary ---

def test_three_users_ordering(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    assert client.get("/api/summary").json()["total"] == 0

    assert click(client, "user1", "Lunes", "Milanesa").status_code == 200
    assert click(client, "user1", "Lunes", "Milanesa").json()["record"]["count"] == 2
    click(client, "user2", "Lunes", "Milanesa")
    click(client, "user2", "Lunes", "Ensalada")
    click(client, "user3", "Viernes", "Pizza", amount=3)
    click(client, "user3", "Viernes", "Pizza", endpoint="decrement")

    summary = client.get("/api/summary").json()
    assert counts(summary, "Lunes") == {"Milanesa": 3, "Ensalada": 1}
    assert counts(summary, "Viernes")["Pizza"] == 2
    assert summary["total"] == 6
    assert summary["state"] == "live"

    mine = client.get("/api/orders/me", params={"user_name": "user1"}).json()
    assert mine["user"] == "user1"
    assert mine["total"] == 2


def test_three_users_on_the_default_menu(client):
    click(client, "user1", "Lunes", "Opción 1")
    click(client, "user1", "Lunes", "Opción 1")
    click(client, "user2", "Lunes", "Opción 1")
    click(client, "user3", "Martes", "Opción 2")

    summary = client.get("/api/summary").json()
    nonzero = {
        item["day"]: {o: c for o, c in item["counts"].items() if c}
        for item in summary["orders"]
        if any(item["counts"].values())
    }
    assert nonzero == {"Lunes": {"Opción 1": 3}, "Martes": {"Opción 2": 1}}


def test_decrement_never_goes_negative(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    click(client, "user1", "Martes", "Pastas")
    click(client, "user1", "Martes", "Pastas", endpoint="decrement", amount=3)

    summary = client.get("/api/summary").json()
    assert counts(summary, "Martes")["Pastas"] == 0

    missing = click(client, "user2", "Martes", "Pastas", endpoint="decrement")
    assert missing.status_code == 200
    assert missing.json()["record"] is None


def test_order_validation_errors(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    assert click(client, "user1", "Martes", "Pizza").status_code == 400
    assert click(client, "user1", "Domingo", "Pizza").status_code == 400
    assert click(client, " ", "Lunes", "Milanesa").status_code == 422


def test_comments_are_attributed_per_user(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    click(client, "user1", "Lunes", "Milanesa")
    click(client, "user2", "Lunes", "Ensalada")

    for user in ("user1", "user2"):
        resp = client.post("/api/orders/comments", json={"user_name": user, "day": "Lunes", "comment": "sin sal"})
        assert resp.status_code == 200

    summary = client.get("/api/summary").json()
    assert sorted(comments(summary, "Lunes")) == ["sin sal (user1)", "sin sal (user2)"]

    resp = client.post("/api/orders/comments/remove", json={"user_name": "user1", "day": "Lunes", "index": 0})
    assert resp.json()["comments"] == []
    assert comments(client.get("/api/summary").json(), "Lunes") == ["sin sal (user2)"]

    cleared = client.post("/api/orders/comments/clear").json()
    assert cleared["cleared"] == 2
    assert comments(client.get("/api/summary").json(), "Lunes") == []


def test_comment_without_order_is_409(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    resp = client.post("/api/orders/comments", json={"user_name": "user1", "day": "Lunes", "comment": "sin sal"})
    assert resp.status_code == 409


def test_menu_change_resets_the_week(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    click(client, "user1", "Lunes", "Milanesa")
    assert client.get("/api/summary").json()["total"] == 1

    # Same menu again: nothing is lost
    again = client.post("/api/menu", json=menu_payload).json()
    assert again["reset"]["should_reset"] is False
    assert client.get("/api/summary").json()["total"] == 1

    changed = {"menu": dict(menu_payload["menu"], LUNES=["Milanesa", "Ensalada", "Tarta"])}
    data = client.post("/api/menu", json=changed).json()
    assert data["reset"]["should_reset"] is True
    assert data["reset"]["notice"]

    summary = client.get("/api/summary").json()
    assert summary["total"] == 0
    assert counts(summary, "Lunes") == {"Milanesa": 0, "Ensalada": 0, "Tarta": 0}


def test_generate_and_share(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    click(client, "user1", "Viernes", "Pizza", amount=2)

    generated = client.post("/api/summary/generate", params={"user_name": "user1"}).json()
    assert generated["updated_by"] == "user1"
    assert generated["total"] == 2

    share = client.get("/api/summary/share").json()
    assert "► TOTAL GENERAL: 2 pedidos" in share["text"]
    assert share["whatsapp_url"].startswith("https://wa.me/?text=")


def test_export_download(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    click(client, "user1", "Viernes", "Pizza")

    resp = client.get("/api/summary/export")
    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == f'attachment; filename="resumen-{TEST_WEEK}.xlsx"'
    assert resp.content[:2] == b"PK"


def test_invalid_week_parameter(client):
    assert client.get("/api/summary", params={"week_start": "next week"}).status_code == 422


# --- Admin ---

def test_send_summary(client, menu_payload, monkeypatch):
    monkeypatch.setattr(weekly_summary, "in_send_window", lambda settings, now=None: False)
    client.post("/api/menu", json=menu_payload)

    assert client.post("/api/admin/send-summary").status_code == 400
    assert client.post("/api/admin/send-summary", params={"force": True}).status_code == 404

    click(client, "user1", "Lunes", "Milanesa")
    resp = client.post("/api/admin/send-summary", params={"force": True})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["recipients"] == ["cocina@example.com", "admin@example.com"]


def test_diagnostics(client, menu_payload):
    client.post("/api/menu", json=menu_payload)
    click(client, "user1", "Lunes", "Milanesa")
    client.get("/api/summary")

    data = client.get("/api/admin/diagnostics").json()
    assert data["week_start"] == TEST_WEEK
    assert data["week_policy"] == f"override:{TEST_WEEK}"
    assert data["records"] == 1
    assert data["weeks"] == [{"week_start": TEST_WEEK, "records": 1}]
    assert data["reconcilers"][0]["state"] == "live"


# --- Live updates ---

def test_websocket_pushes_summary_updates(client, menu_payload):
    client.post("/api/menu", json=menu_payload)

    with client.websocket_connect("/ws/summary") as ws:
        first = ws.receive_json()
        assert first["type"] == "summary"
        assert first["summary"]["week_start"] == TEST_WEEK

        ws.send_text("refresh")
        assert ws.receive_json()["type"] == "summary"

        click(client, "user2", "Lunes", "Milanesa")
        update = ws.receive_json()
        assert update["type"] == "summary"
        assert counts(update["summary"], "Lunes")["Milanesa"] == 1


@pytest.mark.parametrize("path", ["/api/summary", "/api/summary/share"])
def test_read_endpoints_before_any_order(client, path):
    assert client.get(path).status_code == 200
