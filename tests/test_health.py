import json

from marketplace.errors import report_error, error_counts, NotFoundError


def test_health_reports_database_and_errors(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["database"] == "ok"
    before = body["errors"].get("not_found", 0)

    resp = client.get("/api/products/9999")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Product 9999 not found", "code": "not_found"}

    after = client.get("/api/health").json()["errors"]["not_found"]
    assert after == before + 1


def test_unexpected_errors_become_500_without_details():
    before = error_counts().get("internal_error", 0)
    response = report_error(RuntimeError("secret stack detail"))

    assert response.status_code == 500
    assert json.loads(response.body) == {"detail": "Internal server error", "code": "internal_error"}
    assert error_counts()["internal_error"] == before + 1


def test_domain_errors_keep_their_status_and_code():
    response = report_error(NotFoundError("Order not found"))
    assert response.status_code == 404
    assert json.loads(response.body) == {"detail": "Order not found", "code": "not_found"}


def test_unknown_route_uses_the_same_error_shape(client):
    resp = client.get("/api/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


def test_root_describes_the_api(client):
    assert client.get("/").json()["name"] == "Marketplace API"


def test_run_serves_the_app_with_configured_address(monkeypatch):
    from marketplace import main

    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
    main.run()

    assert calls == [(main.app, {"host": main.HOST, "port": main.PORT})]
