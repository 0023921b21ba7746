import logging

import pytest

from kubeprov.errors import RemoteCommandError
from kubeprov.node.models import NodeState, SshCredentials
from kubeprov.node.proxy import MARKER_ROOT, marker_path, validate_key


def test_connects_lazily_and_once(make_nodes, fleet):
    node = make_nodes(1)[0]
    host = fleet.host(node.address)

    assert not node.is_connected
    assert host.connects == []

    node.sudo("true")
    node.sudo("hostname")

    assert node.is_connected
    assert len(host.connects) == 1
    assert host.connects[0][0] == 22


def test_sudo_quotes_arguments(make_nodes, fleet):
    node = make_nodes(1)[0]
    node.sudo("echo", "a b", "it's")

    assert fleet.host(node.address).commands[-1] == "echo 'a b' 'it'\"'\"'s'"


def test_failed_command_raises_unless_unchecked(make_nodes, fleet):
    node = make_nodes(1)[0]
    fleet.host(node.address).fail_on["apt-get"] = 100

    with pytest.raises(RemoteCommandError) as exc_info:
        node.sudo("apt-get install -y foo")
    assert exc_info.value.exit_code == 100
    assert exc_info.value.node == node.name

    response = node.sudo("apt-get install -y foo", check=False)
    assert response.exit_code == 100
    assert not response.success


def test_redacted_command_never_logged(make_nodes, fleet, caplog):
    node = make_nodes(1)[0]
    fleet.host(node.address).fail_on["chpasswd"] = 1
    caplog.set_level(logging.DEBUG, logger="kubeprov")

    with pytest.raises(RemoteCommandError) as exc_info:
        node.sudo("echo sysadmin:hunter2 | chpasswd", redact=True)

    assert "hunter2" not in str(exc_info.value)
    assert "hunter2" not in caplog.text
    assert "[REDACTED]" in caplog.text


def test_invoke_idempotent_runs_once(make_nodes, fleet):
    node = make_nodes(1)[0]
    calls = []

    assert node.invoke_idempotent("setup/packages", lambda: calls.append(1)) is True
    assert node.invoke_idempotent("setup/packages", lambda: calls.append(2)) is False

    assert calls == [1]
    assert f"{MARKER_ROOT}/setup/packages" in fleet.host(node.address).files
    assert node.has_marker("setup/packages")


def test_marker_not_written_when_action_fails(make_nodes):
    node = make_nodes(1)[0]

    def boom():
        raise RuntimeError("interrupted")

    with pytest.raises(RuntimeError):
        node.invoke_idempotent("setup/kernel", boom)

    assert not node.has_marker("setup/kernel")

    calls = []
    assert node.invoke_idempotent("setup/kernel", lambda: calls.append(1)) is True
    assert calls == [1]


def test_clear_marker(make_nodes):
    node = make_nodes(1)[0]
    node.set_marker("a/b")
    node.clear_marker("a/b")
    assert not node.has_marker("a/b")


@pytest.mark.parametrize("key", ["", "/abs", "a//b", "../etc", "a/../b", "a/./b", "has space", "semi;colon"])
def test_invalid_marker_keys(key):
    with pytest.raises(ValueError):
        validate_key(key)


def test_marker_path_layout():
    assert marker_path("kubernetes/join") == "/var/lib/kubeprov/state/kubernetes/join"


def test_update_credentials_reconnects(make_nodes, fleet):
    node = make_nodes(1)[0]
    node.sudo("true")

    new = SshCredentials(username="sysadmin", pkey_text="PEM")
    node.update_credentials(new)
    assert not node.is_connected

    node.sudo("true")
    connects = fleet.host(node.address).connects
    assert len(connects) == 2
    assert connects[1][1] is new


def test_upload_text_normalizes_line_endings(make_nodes, fleet):
    node = make_nodes(1)[0]
    node.upload_text("/etc/kubeprov/x.conf", "a\r\nb\r\n", permissions="600")

    host = fleet.host(node.address)
    assert host.files["/etc/kubeprov/x.conf"] == b"a\nb\n"
    assert host.commands[-1] == "chmod 600 /etc/kubeprov/x.conf"
    assert node.download_text("/etc/kubeprov/x.conf") == "a\nb\n"


def test_fault_is_sticky_until_reset(make_nodes):
    node = make_nodes(1)[0]
    node.fault("disk full")
    node.set_state(NodeState.RUNNING, "working")

    assert node.is_faulted
    assert node.fault_message == "disk full"

    node.reset_state()
    assert node.state is NodeState.PENDING
    assert node.status == ""


def test_wait_for_boot_polls_until_ssh_answers(make_nodes, monkeypatch):
    node = make_nodes(1)[0]
    attempts = []
    real_connector = node._connector

    def flaky(address, port, credentials):
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError("connection refused")
        return real_connector(address, port, credentials)

    node._connector = flaky
    monkeypatch.setattr("kubeprov.readiness.poller.time.sleep", lambda s: None)

    node.wait_for_boot(timeout=60, interval=1)

    assert len(attempts) == 3
    assert node.is_connected
