from __future__ import annotations

import json
import logging
import queue
import threading
import time

import pytest

from conftest import PanelNodeServer, SubmitterClient, send_line
from session_runner.config import effective_settings
from session_runner.errors import LaunchError, SetupError
from session_runner.supervisor import SessionConfig, SessionSupervisor, process_utils, startup

pytestmark = pytest.mark.integration


def make_config(panel_node: PanelNodeServer, tmp_path, **overrides) -> SessionConfig:
    values = dict(
        ini_path="/srv/concerto/init.R",
        test_node={"host": "127.0.0.1"},
        panel_node=panel_node.ref,
        session_id="9",
        panel_node_connection='{"driver":"pdo_mysql"}',
        client='{"ip":"127.0.0.1"}',
        working_dir=str(tmp_path),
        public_dir=str(tmp_path),
        media_url="http://localhost/media",
        log_path=str(tmp_path / "session.log"),
        max_idle_time=60,
        listen_host="127.0.0.1",
    )
    values.update(overrides)
    return SessionConfig(**values)


def endpoints(params: process_utils.LaunchParams):
    test_node = json.loads(params.test_node)
    submitter = json.loads(params.submitter)
    return ("127.0.0.1", test_node["port"]), (submitter["host"], submitter["port"])


def run_in_background(target, *args) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def test_idle_timeout_stops_worker_and_exits_cleanly(panel_node, tmp_path, monkeypatch):
    workers = []

    def fake_launch(params):
        _, (host, port) = endpoints(params)
        workers.append(SubmitterClient(host, port))

    monkeypatch.setattr(process_utils, "launch_worker", fake_launch)
    supervisor = SessionSupervisor(make_config(panel_node, tmp_path, max_idle_time=0.5))

    started = time.monotonic()
    assert supervisor.run() == 0

    assert time.monotonic() - started > 0.5
    assert workers[0].get() == {"source": 2, "code": 3}
    assert supervisor.state.is_serializing is True
    assert supervisor.worker_listener is None
    assert supervisor.submitter_listener is None
    panel_node.assert_no_more()


def test_keep_alive_timeout_stops_worker(panel_node, tmp_path, monkeypatch):
    workers = []

    def fake_launch(params):
        _, (host, port) = endpoints(params)
        workers.append(SubmitterClient(host, port))

    monkeypatch.setattr(process_utils, "launch_worker", fake_launch)
    config = make_config(panel_node, tmp_path, keep_alive_interval_time=0.2, keep_alive_tolerance_time=0.1)

    assert SessionSupervisor(config).run() == 0
    assert workers[0].get() == {"source": 2, "code": 3}


def test_finished_message_is_relayed_once(panel_node, tmp_path, monkeypatch):
    def fake_launch(params):
        (host, port), _ = endpoints(params)
        run_in_background(send_line, host, port, {"source": 1, "code": 1})

    monkeypatch.setattr(process_utils, "launch_worker", fake_launch)

    assert SessionSupervisor(make_config(panel_node, tmp_path)).run() == 0
    assert panel_node.get() == {"source": 1, "code": 1}
    panel_node.assert_no_more()


def test_finished_message_carries_debug_output(panel_node, tmp_path, monkeypatch):
    (tmp_path / "session.log.r").write_text("Error in eval: object 'x' not found\n")

    def fake_launch(params):
        (host, port), _ = endpoints(params)
        run_in_background(send_line, host, port, {"source": 1, "code": 1})

    monkeypatch.setattr(process_utils, "launch_worker", fake_launch)

    assert SessionSupervisor(make_config(panel_node, tmp_path, is_debug=True)).run() == 0
    assert panel_node.get() == {"source": 1, "code": 1, "debug": "Error in eval: object 'x' not found\n"}


def test_submit_reaches_worker_and_results_follow_new_panel_node(panel_node, tmp_path, monkeypatch):
    moved = PanelNodeServer()
    echoed: queue.Queue[dict] = queue.Queue()
    submit = {"source": 0, "code": 2, "values": {"q1": "4"}, "panelNode": moved.descriptor}

    def session_script(worker_channel, submitter_channel):
        worker = SubmitterClient(*submitter_channel)
        send_line(*worker_channel, submit)
        echoed.put(worker.get())
        send_line(*worker_channel, {"source": 1, "code": 5, "templateHtml": "<p>Thanks</p>"})

    def fake_launch(params):
        run_in_background(session_script, *endpoints(params))

    monkeypatch.setattr(process_utils, "launch_worker", fake_launch)
    try:
        assert SessionSupervisor(make_config(panel_node, tmp_path)).run() == 0
        assert echoed.get(timeout=3) == submit
        assert moved.get() == {"source": 1, "code": 5, "templateHtml": "<p>Thanks</p>"}
        panel_node.assert_no_more(wait=0.1)
    finally:
        moved.close()


def test_worker_receives_both_endpoints(panel_node, tmp_path, monkeypatch):
    seen = []

    def fake_launch(params):
        seen.append(params)
        (host, port), _ = endpoints(params)
        run_in_background(send_line, host, port, {"source": 1, "code": 4})

    monkeypatch.setattr(process_utils, "launch_worker", fake_launch)
    config = make_config(panel_node, tmp_path, values='{"a":1}', worker_environ="/etc/Renviron")

    assert SessionSupervisor(config).run() == 0
    params = seen[0]
    test_node = json.loads(params.test_node)
    submitter = json.loads(params.submitter)
    assert test_node["host"] == "127.0.0.1" and test_node["port"] > 0
    assert submitter["host"] == "127.0.0.1" and submitter["port"] != test_node["port"]
    assert params.worker_log_path == str(tmp_path / "session.log.r")
    assert params.values == '{"a":1}'
    assert params.worker_environ == "/etc/Renviron"
    assert params.max_exec_time == config.max_exec_time


def test_listener_setup_failure_reports_error(panel_node, tmp_path, monkeypatch):
    created = []
    real_create = startup.create_listener_socket

    def flaky_create(host, name):
        if created:
            raise SetupError("address in use")
        sock = real_create(host, name)
        created.append(sock)
        return sock

    launches = []
    monkeypatch.setattr(startup, "create_listener_socket", flaky_create)
    monkeypatch.setattr(process_utils, "launch_worker", lambda params: launches.append(params))

    assert SessionSupervisor(make_config(panel_node, tmp_path)).run() == 1
    assert panel_node.get() == {"source": 2, "code": -1}
    assert launches == []
    assert created[0].fileno() == -1


def test_launch_failure_reports_error_and_closes_listeners(panel_node, tmp_path, monkeypatch):
    def failing_launch(params):
        raise LaunchError("pipe missing")

    monkeypatch.setattr(process_utils, "launch_worker", failing_launch)
    supervisor = SessionSupervisor(make_config(panel_node, tmp_path))

    assert supervisor.run() == 1
    assert panel_node.get() == {"source": 2, "code": -1}
    panel_node.assert_no_more()
    assert supervisor.worker_listener is None
    assert supervisor.submitter_listener is None


def test_stop_without_listening_worker_gives_up_after_grace(panel_node, tmp_path, monkeypatch):
    monkeypatch.setattr(process_utils, "launch_worker", lambda params: None)
    monkeypatch.setattr(effective_settings, "RELAY_MIN_ACCEPT_TIMEOUT", 0.3)

    supervisor = SessionSupervisor(make_config(panel_node, tmp_path, max_idle_time=0.2))
    assert supervisor.run() == 0
    assert supervisor.state.is_serializing is True


def test_setup_failure_is_escalated_once(panel_node, tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(process_utils, "launch_worker", lambda params: None)
    caplog.set_level(logging.INFO)

    assert SessionSupervisor(make_config(panel_node, tmp_path, listen_host="256.256.256.256")).run() == 1

    escalated = [r for r in caplog.records if getattr(r, "escalate", False)]
    assert len(escalated) == 1
    assert escalated[0].levelno == logging.ERROR
    assert "creating listener socket failed" in escalated[0].getMessage()
    assert panel_node.get() == {"source": 2, "code": -1}
