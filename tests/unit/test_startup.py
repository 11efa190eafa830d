import asyncio
from types import SimpleNamespace

import pytest

from conftest import FakeRuntime
from hydra_server.app import main
from hydra_server.app.errors import RuntimeUnavailable


def _runtime(monkeypatch, swarm=False):
    runtime = FakeRuntime(swarm=swarm)
    closed = []
    runtime.client = SimpleNamespace(close=lambda: closed.append(True))
    monkeypatch.setattr(main, "docker_runtime_from_env", lambda timeout: runtime)
    return runtime, closed


def test_startup_pings_docker(monkeypatch, settings):
    monkeypatch.setattr(main, "settings", settings)
    runtime, closed = _runtime(monkeypatch)

    asyncio.run(main.ensure_docker_available_on_startup())

    assert runtime.count("ping") == 1
    assert runtime.count("swarm_active") == 0
    assert closed == [True]


def test_startup_checks_swarm_membership_in_swarm_mode(monkeypatch, swarm_settings):
    monkeypatch.setattr(main, "settings", swarm_settings)
    runtime, closed = _runtime(monkeypatch, swarm=False)

    asyncio.run(main.ensure_docker_available_on_startup())

    assert runtime.count("swarm_active") == 1
    assert closed == [True]


def test_startup_exits_when_docker_is_unreachable(monkeypatch, settings):
    monkeypatch.setattr(main, "settings", settings)
    runtime, closed = _runtime(monkeypatch)
    runtime.fail_next["ping"] = RuntimeUnavailable("Container runtime error: connection refused")

    with pytest.raises(SystemExit) as exc:
        asyncio.run(main.ensure_docker_available_on_startup())
    assert exc.value.code == 1
    assert closed == [True]
