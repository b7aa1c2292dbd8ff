from servicedesk.main import app, _dependency_calls
from servicedesk.auth import get_current_user

PUBLIC_PATHS = {
    "/metrics",
    "/health",
}


def test_all_routes_protected():
    for route in app.routes:
        path = getattr(route, 'path', '')
        if not path.startswith('/api'):
            continue
        if path in PUBLIC_PATHS:
            continue
        if not hasattr(route, 'dependant'):
            continue
        deps = set(_dependency_calls(route.dependant))
        assert get_current_user in deps, f"{path} missing authentication"


def test_health_and_metrics_are_public(client):
    assert client.get("/health").json() == {"status": "ok"}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "case_transitions_total" in resp.text
