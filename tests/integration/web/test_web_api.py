import time
from pathlib import Path

from fastapi.testclient import TestClient

from codemend.app import Services
from codemend.config.settings import CodemendConfig
from codemend.core.errors import TransientError
from codemend.crawler.detectors import BaseDetector
from codemend.models.monitoring import MonitoringSignal
from codemend.pipeline.monitor import SignalSource
from codemend.storage.memory import InMemoryIssueStore, InMemoryKnowledgeBackend
from codemend.web.server import create_app

BARE_EXCEPT = "def run(job):\n    try:\n        job()\n    except:\n        pass\n"


def _config(tmp_path: Path, **overrides) -> CodemendConfig:
    raw = {
        "audit": {"enabled": False},
        "llm": {"enabled": False},
        "pipeline": {
            "backup_dir": str(tmp_path / "backups"),
            "monitoring": {"window_seconds": 0, "poll_interval": 0, "stable_checks": 1},
        },
    }
    raw.update(overrides)
    return CodemendConfig.from_dict(raw)


def _project(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    (src / "job.py").write_text(BARE_EXCEPT)
    (src / "notes.py").write_text("# TODO: split this module\nx = 1\n")
    return src


def _wait_idle(client: TestClient) -> dict:
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        status = client.get("/crawl/status").json()
        if not status["isRunning"]:
            return status
        time.sleep(0.02)
    raise AssertionError("crawl did not finish")


def test_crawl_review_and_fix_flow(tmp_path: Path):
    src = _project(tmp_path)
    with TestClient(create_app(Services.build(_config(tmp_path)))) as client:
        response = client.post("/crawl", json={"rootDir": str(src)})
        assert response.status_code == 200
        assert response.json()["success"] is True
        status = _wait_idle(client)
        assert status["stats"]["filesScanned"] == 2
        assert status["stats"]["issuesFound"] == 2

        queue = client.get("/issues/review").json()
        assert len(queue) == 2
        issue = next(i for i in queue if i["error"]["ruleId"] == "PY_BARE_EXCEPT")
        assert issue["status"] == "pending_review"
        assert issue["fix"]["safety"] == "safe"

        review = client.post(f"/issues/{issue['id']}/review", json={"action": "approve", "actor": "ana"})
        assert review.status_code == 200
        assert review.json()["status"] == "approved"
        assert review.json()["decision"]["fromStatus"] == "pending_review"

        again = client.post(f"/issues/{issue['id']}/review", json={"action": "approve"})
        assert again.status_code == 409
        assert again.json()["error"] == "InvalidTransition"

        pipeline = client.post("/fixes/orchestrate", json={"issueId": issue["id"]}).json()
        assert pipeline["state"] == "resolved"
        assert [s["status"] for s in pipeline["stages"]] == ["completed"] * 6
        assert (src / "job.py").read_text() == BARE_EXCEPT.replace("except:", "except Exception:")

        detail = client.get(f"/issues/{issue['id']}").json()
        assert detail["status"] == "resolved"
        assert detail["resolution"]["outcome"] == "resolved"
        decisions = client.get(f"/issues/{issue['id']}/decisions").json()
        assert [d["toStatus"] for d in decisions] == [
            "pending_review", "approved", "fix_applied", "monitoring", "resolved",
        ]

        listed = client.get("/fixes/pipelines").json()
        assert [p["pipelineId"] for p in listed] == [pipeline["pipelineId"]]
        assert client.get(f"/fixes/pipelines/{pipeline['pipelineId']}").status_code == 200

        resolved = client.get("/issues", params={"status": "resolved"}).json()
        assert [i["id"] for i in resolved] == [issue["id"]]


def test_error_mapping(tmp_path: Path):
    with TestClient(create_app(Services.build(_config(tmp_path)))) as client:
        missing = client.get("/issues/issue-missing")
        assert missing.status_code == 404
        assert missing.json() == {
            "success": False,
            "error": "IssueNotFound",
            "message": "Issue not found: issue-missing",
        }
        assert client.post("/issues/issue-missing/review", json={"action": "explode"}).status_code == 400
        assert client.post("/issues/issue-missing/review", json={"action": "approve"}).status_code == 404
        assert client.post("/crawl", json={"rootDir": str(tmp_path / "nowhere")}).status_code == 400
        assert client.post("/crawl/parallel", json={"directories": []}).status_code == 400
        assert client.post("/issues/review/batch", json={"policy": "yolo"}).status_code == 400
        assert client.post("/fixes/orchestrate", json={"issueId": "issue-missing"}).status_code == 404
        assert client.get("/fixes/pipelines/pipeline-missing").status_code == 404
        assert client.post("/knowledge/kn-missing/usage", json={"success": True}).status_code == 404
        assert client.post("/fixes/calibrate-confidence", json={"rawConfidence": 1.5}).status_code == 422


def test_duplicate_crawl_of_running_target_conflicts(tmp_path: Path):
    class SlowDetector(BaseDetector):
        detector_id = "SLOW"
        description = "Takes its time."

        def check(self, path, text):
            time.sleep(0.3)
            return []

    src = _project(tmp_path)
    services = Services.build(_config(tmp_path), detectors=[SlowDetector()])
    with TestClient(create_app(services)) as client:
        assert client.post("/crawl", json={"rootDir": str(src)}).status_code == 200
        second = client.post("/crawl", json={"rootDir": str(src)})
        assert second.status_code == 409
        assert second.json()["error"] == "CrawlInProgress"

        parallel = client.get("/crawl/parallel/status").json()
        assert parallel["queueStatus"]["active"] == 1
        assert client.post("/crawl/stop").json()["stopped"] == 1
        _wait_idle(client)


def test_parallel_crawl_reports_each_target(tmp_path: Path):
    src = _project(tmp_path)
    with TestClient(create_app(Services.build(_config(tmp_path)))) as client:
        body = client.post(
            "/crawl/parallel",
            json={"directories": [str(src), str(tmp_path / "missing")], "options": {"concurrency": 2}},
        ).json()
        assert body["success"] is False
        assert [r["success"] for r in body["results"]] == [True, False]
        assert body["queueStatus"]["concurrency"] == 2
        _wait_idle(client)
        crawls = client.get("/crawl/parallel/status").json()["crawls"]
        assert crawls[0]["state"] == "completed"
        assert crawls[0]["stats"]["filesScanned"] == 2


def test_batch_review_with_safe_tier_policy(tmp_path: Path):
    web = tmp_path / "web"
    web.mkdir()
    for name in ("a.js", "b.js", "c.js"):
        (web / name).write_text("function go() {\n  console.log('go');\n}\n")
    with TestClient(create_app(Services.build(_config(tmp_path)))) as client:
        client.post("/crawl", json={"rootDir": str(web)})
        _wait_idle(client)

        strict = client.post("/issues/review/batch", json={"policy": "safe-tier"}).json()
        assert strict["approved"] == []
        assert len(strict["skipped"]) == 3

        relaxed = client.post("/issues/review/batch", json={"policy": "safe-tier", "minConfidence": 0.75}).json()
        assert len(relaxed["approved"]) == 3
        assert len(relaxed["patternsLearned"]) == 1
        assert client.get("/issues/review").json() == []


def test_calibration_and_knowledge_endpoints(tmp_path: Path):
    with TestClient(create_app(Services.build(_config(tmp_path)))) as client:
        for fix_id in ("fix-1", "fix-2"):
            response = client.post(
                "/fixes/record-outcome",
                json={"fixId": fix_id, "predicted": 0.9, "success": False, "method": "llm", "domain": "bug"},
            )
            assert response.json() == {"success": True}

        report = client.get("/fixes/calibration-report", params={"method": "llm"}).json()
        assert report["sampleCount"] == 2
        assert report["meanActual"] == 0.0

        calibrated = client.post(
            "/fixes/calibrate-confidence", json={"rawConfidence": 0.9, "method": "llm", "domain": "bug"}
        ).json()
        assert calibrated["sampleCount"] == 2
        assert calibrated["calibrated"] < 0.9

        added = client.post(
            "/knowledge",
            json={"type": "fix", "content": "Replace bare except with except Exception", "tags": ["PY_BARE_EXCEPT"]},
        ).json()
        assert added["status"] == "stored"
        entry_id = added["entry"]["id"]

        found = client.get("/knowledge/search", params={"q": "bare except", "tag": "PY_BARE_EXCEPT"}).json()
        assert found[0]["id"] == entry_id

        used = client.post(f"/knowledge/{entry_id}/usage", json={"success": True}).json()
        assert used["usageCount"] == 1
        assert used["successRate"] == 1.0

        names = {b["name"]: b["state"] for b in client.get("/health/breakers").json()}
        assert names == {"issue_store": "closed", "knowledge_store": "closed", "fix_generator": "closed"}


def test_open_breaker_maps_to_503_with_retry_after(tmp_path: Path):
    class DownBackend(InMemoryKnowledgeBackend):
        async def all(self, type=None):
            raise TransientError("knowledge database unreachable")

    config = _config(tmp_path, breakers={"knowledge_store": {"failure_threshold": 1, "reset_timeout": 30.0}})
    services = Services.build(config, knowledge_backend=DownBackend())
    with TestClient(create_app(services)) as client:
        first = client.get("/knowledge/search", params={"q": "anything"})
        assert first.status_code == 500
        second = client.get("/knowledge/search", params={"q": "anything"})
        assert second.status_code == 503
        assert second.json()["error"] == "DependencyOpen"
        assert int(second.headers["Retry-After"]) >= 1

        reset = {b["name"]: b["state"] for b in client.post("/health/breakers/reset").json()}
        assert reset["knowledge_store"] == "closed"
        # closed again, so the next call reaches the failing backend instead of short-circuiting
        assert client.get("/knowledge/search", params={"q": "anything"}).status_code == 500


def test_dead_issue_store_opens_its_breaker(tmp_path: Path):
    class DownIssueStore(InMemoryIssueStore):
        async def list_issues(self, **filters):
            raise ConnectionError("database unreachable")

    config = _config(tmp_path, breakers={"issue_store": {"failure_threshold": 2, "reset_timeout": 30.0}})
    services = Services.build(config, issue_store=DownIssueStore())
    with TestClient(create_app(services), raise_server_exceptions=False) as client:
        assert client.get("/issues").status_code == 500
        assert client.get("/issues/review").status_code == 500
        blocked = client.get("/issues")
        assert blocked.status_code == 503
        assert blocked.json()["error"] == "DependencyOpen"
        assert "issue_store" in blocked.json()["message"]

        states = {b["name"]: b["state"] for b in client.get("/health/breakers").json()}
        assert states["issue_store"] == "open"
        assert states["knowledge_store"] == "closed"


def test_team_detection_records_patterns(tmp_path: Path):
    contributors = [
        {"id": "ana", "categories": ["ui", "css"], "fileTypes": [".tsx"]},
        {"id": "ben", "categories": ["html", "javascript"], "fileTypes": [".js"]},
        {"id": "cho", "categories": ["api", "server"], "fileTypes": [".py"]},
    ]
    with TestClient(create_app(Services.build(_config(tmp_path)))) as client:
        body = client.post("/knowledge/teams", json={"contributors": contributors, "minScore": 0.0}).json()
        assert body["stored"] == 1
        assert body["teams"][0]["members"] == ["ana", "ben", "cho"]
        assert body["teams"][0]["name"].endswith("team-ana-ben-cho")

        again = client.post("/knowledge/teams", json={"contributors": contributors, "minScore": 0.0}).json()
        assert again["duplicate"] == 1

        found = client.get("/knowledge/search", params={"tag": "team"}).json()
        assert [e["metadata"]["members"] for e in found] == [["ana", "ben", "cho"]]

        bad = client.post("/knowledge/teams", json={"contributors": contributors, "minSize": 1})
        assert bad.status_code == 400


def test_auto_fix_counts_only_resolved_pipelines(tmp_path: Path):
    class FailingTests(SignalSource):
        name = "tests"

        async def collect(self, session, ctx):
            return MonitoringSignal(source=self.name, test_failures=1, details=["test_job failed"])

    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()
    resolved_src = _project(tmp_path / "a")
    rolled_back_src = _project(tmp_path / "b")
    body = {"options": {"autoFix": True}}

    with TestClient(create_app(Services.build(_config(tmp_path)))) as client:
        client.post("/crawl", json={"rootDir": str(resolved_src), **body})
        stats = _wait_idle(client)["stats"]
        assert stats["issuesAutoFixDispatched"] == 1
        assert stats["issuesAutoFixed"] == 1

    services = Services.build(_config(tmp_path), signal_sources=[FailingTests()])
    with TestClient(create_app(services)) as client:
        client.post("/crawl", json={"rootDir": str(rolled_back_src), **body})
        stats = _wait_idle(client)["stats"]
        assert stats["issuesAutoFixDispatched"] == 1
        assert stats["issuesAutoFixed"] == 0
        assert stats["issuesNeedingReview"] == 2
        assert (rolled_back_src / "job.py").read_text() == BARE_EXCEPT
        assert client.get("/issues", params={"status": "rolled_back"}).json()[0]["error"]["ruleId"] == "PY_BARE_EXCEPT"
