import pytest
import requests

from shieldcsp.models import AuditLog, Notification, Scan
from shieldcsp.scanner import HeaderFetcher
from shieldcsp.services import JOB_QUEUE_KEY, ORCHESTRATOR_KEY
from tests.unit.fakes import FakeHttpSession, FakeResponse

URL = "https://example.com"


@pytest.fixture
def http(app):
    """Route every scan in the app through a fake HTTP session."""
    session = FakeHttpSession({URL: FakeResponse(200, {"X-Frame-Options": "DENY"})})
    app.extensions[ORCHESTRATOR_KEY].fetcher = HeaderFetcher(session=session)
    return session


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.get_json() == {"status": "up and running", "queue": "memory"}


def test_unknown_route_returns_json_404(client):
    resp = client.get("/nope")

    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Not found"


# ---------------------------------------------------------------------------
# POST /scans
# ---------------------------------------------------------------------------

def test_sync_scan_requires_domain_id(client):
    resp = client.post("/scans", json={})
    assert resp.status_code == 400


def test_sync_scan_rejects_unknown_scan_type(client, domain):
    resp = client.post("/scans", json={"domainId": domain.id, "scanType": "deep"})
    assert resp.status_code == 400
    assert "Invalid scan type" in resp.get_json()["error"]


def test_sync_scan_unknown_domain_is_404(client, http):
    resp = client.post("/scans", json={"domainId": 999})
    assert resp.status_code == 404


def test_sync_scan_success(client, domain, http):
    resp = client.post("/scans", json={"domainId": domain.id, "scanType": "headers-only"})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["scan"]["status"] == "completed"
    assert body["scan"]["scanType"] == "headers-only"
    assert len(body["scan"]["scores"]) == 15
    assert body["previousScore"] is None

    # Side effects ran inline through the real collaborators
    assert Notification.query.filter_by(type="scan-completion").count() == 1
    assert AuditLog.query.filter_by(action="security:score-change").count() == 1


def test_sync_scan_failure_is_502(client, db, domain, http):
    http.routes[URL] = requests.ConnectionError("connection refused")

    resp = client.post("/scans", json={"domainId": domain.id})

    assert resp.status_code == 502
    body = resp.get_json()
    assert "connection refused" in body["message"]
    assert db.session.get(Scan, body["scanId"]).status == "failed"


# ---------------------------------------------------------------------------
# POST /scans/enqueue
# ---------------------------------------------------------------------------

def test_enqueue_returns_job_id(client, domain):
    resp = client.post("/scans/enqueue", json={"domainId": domain.id, "priority": 2})

    assert resp.status_code == 202
    assert resp.get_json()["jobId"].startswith("scan-")

    stats = client.get("/queue/stats").get_json()["stats"]
    assert stats["pending"] == 1


def test_enqueue_future_job_is_delayed(client, domain):
    resp = client.post("/scans/enqueue", json={
        "domainId": domain.id,
        "scheduledFor": "2999-01-01T00:00:00Z",
    })

    assert resp.status_code == 202
    assert client.get("/queue/stats").get_json()["stats"]["delayed"] == 1


@pytest.mark.parametrize("body", [
    {"scheduledFor": "next tuesday"},
    {"priority": "high"},
    {"maxRetries": -1},
])
def test_enqueue_validates_options(client, domain, body):
    resp = client.post("/scans/enqueue", json={"domainId": domain.id, **body})
    assert resp.status_code == 400


def test_enqueue_unknown_domain_is_404(client):
    resp = client.post("/scans/enqueue", json={"domainId": 999})
    assert resp.status_code == 404


@pytest.mark.parametrize("path", ["/scans", "/scans/enqueue"])
def test_domain_id_zero_is_looked_up_not_treated_as_missing(client, path):
    resp = client.post(path, json={"domainId": 0})

    assert resp.status_code == 404
    assert resp.get_json()["error"] == "domain not found"


def test_enqueue_without_queue_is_503(app, client, domain):
    app.extensions[JOB_QUEUE_KEY] = None

    resp = client.post("/scans/enqueue", json={"domainId": domain.id})

    assert resp.status_code == 503
    assert resp.get_json()["error"] == "Queue unavailable"


# ---------------------------------------------------------------------------
# /queue
# ---------------------------------------------------------------------------

def test_process_queue_runs_jobs(client, domain, http):
    client.post("/scans/enqueue", json={"domainId": domain.id})

    resp = client.post("/queue/process?batchSize=5")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["processed"] == 1
    assert body["stats"] == {"pending": 0, "processing": 0, "delayed": 0, "failed": 0}
    assert Scan.query.filter_by(domain_id=domain.id, status="completed").count() == 1


def test_process_queue_rejects_bad_batch_size(client):
    assert client.post("/queue/process?batchSize=0").status_code == 400


def test_failed_scan_in_queue_is_retried_later(client, domain, http):
    http.routes[URL] = requests.ConnectionError("refused")
    client.post("/scans/enqueue", json={"domainId": domain.id})

    body = client.post("/queue/process").get_json()

    assert body["processed"] == 0
    assert body["stats"]["delayed"] == 1


def test_schedule_endpoint(client, make_domain):
    make_domain("hourly.test", scan_frequency="hourly")
    make_domain("manual.test")

    resp = client.post("/queue/schedule")

    assert resp.status_code == 200
    assert resp.get_json() == {"scheduled": 1, "message": "Scheduled 1 automated scans"}


def test_failed_jobs_listing(app, client):
    queue = app.extensions[JOB_QUEUE_KEY]
    queue.enqueue(4242, max_retries=0)
    client.post("/queue/process")

    jobs = client.get("/queue/failed").get_json()["jobs"]

    assert [j["domainId"] for j in jobs] == [4242]
    assert jobs[0]["lastError"] == "Domain not found"


def test_queue_stats_without_queue_is_503(app, client):
    app.extensions[JOB_QUEUE_KEY] = None
    assert client.get("/queue/stats").status_code == 503


# ---------------------------------------------------------------------------
# GET /scans
# ---------------------------------------------------------------------------

def test_list_and_get_scans(client, make_domain, http):
    a = make_domain(URL)
    b = make_domain("other.test")
    http.routes["https://other.test"] = FakeResponse(200, {"X-Content-Type-Options": "nosniff"})
    client.post("/scans", json={"domainId": a.id})
    client.post("/scans", json={"domainId": b.id})

    all_scans = client.get("/scans").get_json()["scans"]
    only_a = client.get(f"/scans?domainId={a.id}").get_json()["scans"]

    assert len(all_scans) == 2
    assert [s["domainId"] for s in only_a] == [a.id]

    detail = client.get(f"/scans/{only_a[0]['id']}").get_json()
    assert detail["id"] == only_a[0]["id"]
    assert len(detail["scores"]) == 15


def test_get_unknown_scan_is_404(client):
    assert client.get("/scans/12345").status_code == 404
