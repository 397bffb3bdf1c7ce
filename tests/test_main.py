def test_root(client):
    assert client.get("/").json() == {"message": "Ascend AI Empire API ready"}


def test_status_report(client, db):
    db["user"].insert_one({"email": "x@example.com"})
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["database"] == "✅ Connected & Working"
    assert "user" in body["collections"]
    assert body["stripe"] == "✅ Configured"


def test_unknown_route_uses_error_envelope(client):
    res = client.get("/api/nothing-here")
    assert res.status_code == 404
    assert res.json()["status"] == "error"
