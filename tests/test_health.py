def test_health(client):
    r = client.get("/health"); assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_mock_login_provisions_user(client, db):
    r = client.post("/api/auth/mock-login", json={"uid": "tester", "email": "t@example.com"})
    assert r.status_code == 200; token = r.json()["access_token"]; hdr = {"Authorization": f"Bearer {token}"}
    again = client.post("/api/auth/mock-login", json={"uid": "tester"}).json()
    assert again["user_id"] == r.json()["user_id"]
    r = client.get("/api/exam/history", headers=hdr); assert r.status_code == 200 and r.json() == []


def test_unknown_route_uses_error_envelope(client):
    r = client.get("/api/exam/mock/start")
    assert r.status_code == 405
    assert r.json()["error"]["type"] == "http_error"
