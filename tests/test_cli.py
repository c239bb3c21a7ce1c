import json

import pytest

import cli


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = body if isinstance(body, str) else json.dumps(body)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body


class FakeSession:
    """Replays scripted responses per (method, path); the last one repeats."""

    def __init__(self, routes):
        self.routes = routes
        self.auth = None
        self.calls = []

    def _respond(self, method, url, **kwargs):
        path = url.split("://", 1)[-1].split("/", 1)[-1]
        self.calls.append((method, "/" + path, kwargs))
        script = self.routes[(method, "/" + path)]
        status, body = script.pop(0) if len(script) > 1 else script[0]
        return FakeResponse(status, body)

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)


def _status(phase, current=None, target=None, last_error=None):
    return {
        "service_id": "web",
        "current_revision": current,
        "target_revision": target,
        "phase": phase,
        "generation": 3,
        "last_error": last_error,
        "updated_at": "2024-01-01T00:00:00+00:00",
    }


@pytest.fixture
def session(monkeypatch):
    holder = {}

    def install(routes):
        holder["session"] = FakeSession(routes)
        monkeypatch.setattr(cli.requests, "Session", lambda: holder["session"])
        return holder["session"]

    return install


@pytest.fixture
def revision_file(tmp_path):
    path = tmp_path / "rev.json"
    path.write_text(json.dumps({"revision_id": "r2", "containers": [{"name": "app", "image_ref": "img/app:2"}]}))
    return str(path)


def _deploy(*extra):
    return ["--user", "ops", "--password", "pw", "deploy", "web", *extra, "--poll-s", "0"]


def test_deploy_without_wait(session, revision_file, capsys):
    s = session({("POST", "/services/web/deploy"): [(202, _status("LAUNCHING", "r1", "r2"))]})
    assert cli.main(_deploy("--file", revision_file)) == 0
    assert s.auth == ("ops", "pw")
    assert s.calls[0][2]["json"]["revision_id"] == "r2"
    assert json.loads(capsys.readouterr().out)["phase"] == "LAUNCHING"


def test_revision_id_override(session, revision_file):
    s = session({("POST", "/services/web/deploy"): [(202, _status("LAUNCHING", "r1", "r9"))]})
    assert cli.main(_deploy("--file", revision_file, "--revision-id", "r9")) == 0
    assert s.calls[0][2]["json"]["revision_id"] == "r9"


def test_wait_until_committed(session, revision_file):
    s = session(
        {
            ("POST", "/services/web/deploy"): [(202, _status("LAUNCHING", "r1", "r2"))],
            ("GET", "/services/web"): [
                (200, _status("LAUNCHING", "r1", "r2")),
                (200, _status("STABILIZING", "r1", "r2")),
                (200, _status("COMMITTED", "r2")),
            ],
        }
    )
    assert cli.main(_deploy("--file", revision_file, "--wait")) == 0
    assert len([c for c in s.calls if c[0] == "GET"]) == 3


def test_wait_reports_rollback(session, revision_file):
    session(
        {
            ("POST", "/services/web/deploy"): [(202, _status("LAUNCHING", "r1", "r2"))],
            ("GET", "/services/web"): [
                (200, _status("ROLLING_BACK", "r1", "r2", "EssentialContainerError: app is UNHEALTHY")),
                (200, _status("COMMITTED", "r1", None, "EssentialContainerError: app is UNHEALTHY")),
            ],
        }
    )
    assert cli.main(_deploy("--file", revision_file, "--wait")) == 9


def test_wait_reports_failed(session, revision_file):
    session(
        {
            ("POST", "/services/web/deploy"): [(202, _status("LAUNCHING", None, "r2"))],
            ("GET", "/services/web"): [(200, _status("FAILED", None, None, "no previous revision to restore"))],
        }
    )
    assert cli.main(_deploy("--file", revision_file, "--wait")) == 11


def test_noop_deploy_does_not_wait(session, revision_file):
    s = session({("POST", "/services/web/deploy"): [(202, _status("COMMITTED", "r2"))]})
    assert cli.main(_deploy("--file", revision_file, "--wait")) == 0
    assert [c[0] for c in s.calls] == ["POST"]


@pytest.mark.parametrize(
    "status, error, expected",
    [
        (422, "dependency_cycle", 4),
        (422, "unknown_reference", 5),
        (409, "rollout_in_progress", 6),
        (422, "invalid_revision", 3),
        (500, "something_new", 1),
    ],
)
def test_deploy_errors_map_to_exit_codes(session, revision_file, status, error, expected):
    session({("POST", "/services/web/deploy"): [(status, {"error": error, "detail": "nope"})]})
    assert cli.main(_deploy("--file", revision_file)) == expected


def test_bad_credentials(session):
    session({("GET", "/services"): [(401, {"detail": "Invalid credentials"})]})
    assert cli.main(["services"]) == 2


def test_non_json_error_body(session):
    session({("GET", "/services/web"): [(502, "Bad Gateway")]})
    assert cli.main(["status", "web"]) == 1


def test_abort_and_events(session):
    s = session(
        {
            ("POST", "/services/web/abort"): [(200, _status("LAUNCHING", "r1", "r2"))],
            ("GET", "/events"): [(200, [])],
        }
    )
    assert cli.main(["abort", "web", "--reason", "bad build"]) == 0
    assert s.calls[0][2]["json"] == {"reason": "bad build"}
    assert cli.main(["events", "--service", "web", "--limit", "5"]) == 0
    assert s.calls[1][2]["params"] == {"limit": 5, "service_id": "web"}


def test_stdin_revision(session, monkeypatch):
    import io

    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"containers": [{"name": "app", "image_ref": "img"}]})))
    s = session({("POST", "/services/web/deploy"): [(202, _status("LAUNCHING", None, "r20240101T000000000000Z"))]})
    assert cli.main(["deploy", "web", "--file", "-"]) == 0
    assert "revision_id" not in s.calls[0][2]["json"]
