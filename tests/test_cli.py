import json

from addrpool.cli import main


def _run(capsys, database_url, *argv):
    code = main(["--database-url", database_url, *argv])
    captured = capsys.readouterr()
    return code, captured


def test_init_db_and_stats(capsys, settings):
    code, captured = _run(capsys, settings.database_url, "init-db")
    assert code == 0
    assert json.loads(captured.out)["status"] == "ok"

    code, captured = _run(capsys, settings.database_url, "stats")
    assert code == 0
    assert json.loads(captured.out) == []


def test_import_and_stats(capsys, settings, make_pool):
    pool = make_pool("10.0.0.0/24", import_addresses=False)

    code, captured = _run(capsys, settings.database_url, "import-cidr", str(pool.id), "10.0.0.0/28")
    assert code == 0
    assert json.loads(captured.out)["created"] == 14

    code, captured = _run(capsys, settings.database_url, "stats", str(pool.id))
    assert json.loads(captured.out)["available"] == 14


def test_release_unknown_session(capsys, settings, engine):
    code, captured = _run(capsys, settings.database_url, "release", "nobody")

    assert code == 0
    assert json.loads(captured.out) == {"session_id": "nobody", "released": False, "address": None}


def test_errors_exit_nonzero(capsys, settings, engine):
    code, captured = _run(capsys, settings.database_url, "stats", "999")

    assert code == 1
    assert json.loads(captured.err.strip().splitlines()[-1])["error"] == "PoolNotFound"


def test_verify(capsys, settings, engine):
    code, captured = _run(capsys, settings.database_url, "verify")

    assert code == 0
    assert json.loads(captured.out)["anomalies_found"] == 0


def test_global_and_router_stats(capsys, settings, services, router, make_pool):
    pool = make_pool("10.0.0.0/29")
    services.assignments.assign("S1", pool.id)

    code, captured = _run(capsys, settings.database_url, "stats", "--global")
    assert code == 0
    assert json.loads(captured.out)["assigned"] == 1

    code, captured = _run(capsys, settings.database_url, "stats", "--router", str(router.id))
    assert code == 0
    assert json.loads(captured.out)["summary"]["total_pools"] == 1


def test_move(capsys, monkeypatch, settings, services, make_pool):
    monkeypatch.setattr("addrpool.cli.get_settings", lambda: settings)
    active = make_pool("10.0.0.0/29", name="active")
    suspended = make_pool("10.9.0.0/29", name="suspended")
    services.assignments.assign("S1", active.id)

    code, captured = _run(capsys, settings.database_url, "move", "S1", str(suspended.id))

    assert code == 0
    assert json.loads(captured.out) == {"session_id": "S1", "pool_id": suspended.id, "address": "10.9.0.1"}
