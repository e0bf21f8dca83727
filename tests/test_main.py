"""Console entry point for the API server."""

import pytest

from coinbook import main


def test_run_serves_a_single_process(monkeypatch: pytest.MonkeyPatch) -> None:
    """The API never forks workers: sockets and pending events are process-local."""
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main.run()

    assert len(calls) == 1
    app, kwargs = calls[0]
    assert app == "coinbook.main:app"
    assert kwargs["workers"] == 1
    assert kwargs["port"] == main.get_settings().port
