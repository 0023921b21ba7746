import shlex
import threading

import pytest

from kubeprov.config.models import NodeDefinition
from kubeprov.node.proxy import NodeProxy
from kubeprov.node.models import SshCredentials


# ----------------- Fake SSH transport -----------------

class FakeHost:
    """State of one fake machine; survives reconnects."""

    def __init__(self, name):
        self.name = name
        self.files = {}
        self.commands = []
        self.outputs = {}      # exact command -> stdout
        self.fail_on = {}      # substring -> exit code
        self.connects = []
        self.lock = threading.Lock()

    def ran(self, fragment):
        return [c for c in self.commands if fragment in c]


class FakeRunner:
    def __init__(self, host):
        self.host = host
        self.closed = False

    def run(self, cmd, *, sudo=False, timeout=None):
        host = self.host
        with host.lock:
            host.commands.append(cmd)
            for fragment, rc in host.fail_on.items():
                if fragment in cmd:
                    return rc, "", f"{fragment} failed"

            parts = shlex.split(cmd)
            if parts[:2] == ["test", "-f"]:
                return (0 if parts[2] in host.files else 1), "", ""
            if parts[0] == "touch":
                host.files[parts[1]] = b""
            elif parts[0] == "rm":
                host.files.pop(parts[-1], None)
            return 0, host.outputs.get(cmd, ""), ""

    def put_bytes(self, content, remote_path, *, sudo=False):
        with self.host.lock:
            self.host.files[remote_path] = content

    def get_bytes(self, remote_path, *, sudo=False):
        with self.host.lock:
            if remote_path not in self.host.files:
                raise IOError(f"{remote_path}: no such file")
            return self.host.files[remote_path]

    def close(self):
        self.closed = True


class FakeFleet:
    """Fake hosts keyed by address plus a connector for NodeProxy."""

    def __init__(self):
        self.hosts = {}

    def host(self, address):
        return self.hosts.setdefault(address, FakeHost(address))

    def connector(self, address, port, credentials):
        host = self.host(address)
        host.connects.append((port, credentials))
        return FakeRunner(host)


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def creds():
    return SshCredentials(username="sysadmin", password="secret")


@pytest.fixture
def make_nodes(fleet, creds):
    def _make(count, masters=1):
        nodes = []
        for i in range(count):
            definition = NodeDefinition(
                name=f"node-{i}",
                role="master" if i < masters else "worker",
                address=f"10.0.0.{i + 10}",
            )
            nodes.append(NodeProxy(definition, creds, connector=fleet.connector))
        return nodes

    return _make
