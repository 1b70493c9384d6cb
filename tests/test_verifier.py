from __future__ import annotations

import httpx

from edge_deploy_kit.verifier import PostDeploymentVerifier


def _verifier(statuses, **kwargs) -> PostDeploymentVerifier:
    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.get(request.url.path)
        if status is None:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(status)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PostDeploymentVerifier(paths=["/health", "/", "/api"], http_client=client, **kwargs)


def test_comprehensive_thresholds() -> None:
    report = _verifier({"/health": 200, "/": 404, "/api": 401}).comprehensive("https://foo.workers.dev/")

    assert report.passed
    assert [c.url for c in report.checks] == [
        "https://foo.workers.dev/health",
        "https://foo.workers.dev/",
        "https://foo.workers.dev/api",
    ]


def test_server_error_on_root_fails() -> None:
    report = _verifier({"/health": 200, "/": 500, "/api": 200}).comprehensive("https://foo.workers.dev")

    assert not report.passed
    assert [c.passed for c in report.checks] == [True, False, True]
    assert "- /: FAIL (500)" in report.render()


def test_health_client_error_fails_smoke() -> None:
    report = _verifier({"/health": 404}).smoke("https://foo.workers.dev")

    assert report.mode == "smoke"
    assert len(report.checks) == 1
    assert not report.passed


def test_connection_errors_are_reported_not_raised() -> None:
    report = _verifier({}).smoke("https://foo.workers.dev")

    assert not report.passed
    assert report.checks[0].status_code is None
    assert "ConnectError" in report.checks[0].error


def test_missing_url_is_skipped_and_recorded() -> None:
    class Audit:
        def __init__(self) -> None:
            self.records = []

        def domain_of(self, deployment_id):  # noqa: ANN001
            return "example.com"

        def record(self, event_type, domain, details, deployment_id=None):  # noqa: ANN001
            self.records.append((event_type, details))

    audit = Audit()
    report = _verifier({}, audit=audit, deployment_id="deploy-1").comprehensive(None)

    assert report.skipped and report.passed
    assert report.render().startswith("## Post-deploy verification\n- skipped:")
    assert audit.records[0][0] == "VERIFICATION_RESULT"
    assert audit.records[0][1]["skipped"] is True
