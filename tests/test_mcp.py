import pytest

from docreg.scheduled_jobs import mcp as mcp_module


@pytest.fixture
def served(manager, monkeypatch):
    monkeypatch.setattr(mcp_module, "_MANAGER", manager)
    return manager


def test_rejects_missing_or_wrong_token(served):
    res = mcp_module._guarded(None, lambda m: {"jobs": []})
    assert res["ok"] is False
    assert res["error"] == "unauthorized"

    res = mcp_module._guarded("wrong", lambda m: {"jobs": []})
    assert res["ok"] is False


def test_success_is_wrapped(served, create_job):
    job_id = create_job()["job_id"]

    res = mcp_module._guarded("test-token", lambda m: {"job": m.get_job(job_id)})

    assert res["ok"] is True
    assert res["job"]["job_id"] == job_id


@pytest.mark.parametrize(
    "call, code",
    [
        (lambda m: {"job": m.get_job("JOB_missing")}, "not_found"),
        (lambda m: m.list_jobs(status="SLEEPING"), "validation_error"),
        (lambda m: {"job": m.resume(m.list_jobs()["jobs"][0]["job_id"])}, "invalid_state"),
    ],
)
def test_domain_errors_are_mapped(served, create_job, call, code):
    create_job()

    res = mcp_module._guarded("test-token", call)

    assert res["ok"] is False
    assert res["error"] == code
    assert res["message"]


def test_unexpected_errors_propagate(served):
    def boom(m):
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        mcp_module._guarded("test-token", boom)
