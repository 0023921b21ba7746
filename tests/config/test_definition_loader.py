from pathlib import Path
import textwrap

import pytest

from kubeprov.config.loader import load_definition, parse_definition
from kubeprov.config.models import HostingEnvironment
from kubeprov.errors import ClusterDefinitionError

MINIMAL = textwrap.dedent("""
    name: alpha
    network:
      node_subnet: 10.0.0.0/24
    nodes:
      - name: m1
        role: master
        address: 10.0.0.10
      - name: w1
        address: 10.0.0.11
        labels:
          tier: apps
""")


@pytest.fixture(autouse=True)
def _no_secrets_override(monkeypatch):
    monkeypatch.delenv("KUBEPROV_SECRETS_FILE", raising=False)


def _write(tmp_path: Path, text: str, name: str = "cluster.yaml") -> Path:
    f = tmp_path / name
    f.write_text(text)
    return f


def test_load_definition_minimal_ok(tmp_path: Path):
    d = load_definition(_write(tmp_path, MINIMAL))

    assert d.name == "alpha"
    assert d.hosting.environment is HostingEnvironment.BARE_METAL
    assert [n.name for n in d.masters] == ["m1"]
    assert d.by_name()["w1"].labels == {"tier": "apps"}
    assert d.by_name()["w1"].role == "worker"


def test_secrets_file_beside_definition_is_merged(tmp_path: Path):
    path = _write(tmp_path, MINIMAL)
    _write(tmp_path, "security:\n  ssh_password: hunter2\n", "secrets.yaml")

    assert load_definition(path).security.ssh_password == "hunter2"


def test_secrets_file_from_environment(tmp_path: Path, monkeypatch):
    path = _write(tmp_path, MINIMAL)
    other = tmp_path / "vault"
    other.mkdir()
    secrets = _write(other, "security:\n  ssh_password: from-env\n", "s.yaml")
    monkeypatch.setenv("KUBEPROV_SECRETS_FILE", str(secrets))

    assert load_definition(path).security.ssh_password == "from-env"


def test_empty_secret_values_do_not_override(tmp_path: Path):
    text = MINIMAL + "security:\n  ssh_username: ops\n"
    path = _write(tmp_path, text)
    _write(tmp_path, "security:\n  ssh_username: ''\n", "secrets.yaml")

    assert load_definition(path).security.ssh_username == "ops"


def test_env_vars_are_expanded(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("ALPHA_PW", "s3cret")
    path = _write(tmp_path, MINIMAL + "security:\n  ssh_password: ${ALPHA_PW}\n")

    assert load_definition(path).security.ssh_password == "s3cret"


def test_missing_file(tmp_path: Path):
    with pytest.raises(ClusterDefinitionError) as exc_info:
        load_definition(tmp_path / "nope.yaml")
    assert "not found" in str(exc_info.value)


def test_non_mapping_yaml(tmp_path: Path):
    with pytest.raises(ClusterDefinitionError):
        load_definition(_write(tmp_path, "- just\n- a list\n"))


def _nodes(*entries):
    return {"name": "alpha", "nodes": [dict(e) for e in entries]}


M1 = {"name": "m1", "role": "master", "address": "10.0.0.10"}


def test_duplicate_node_names():
    with pytest.raises(ClusterDefinitionError) as exc_info:
        parse_definition(_nodes(M1, {"name": "m1", "address": "10.0.0.11"}))
    assert "duplicate node name 'm1'" in str(exc_info.value)


def test_duplicate_node_addresses():
    with pytest.raises(ClusterDefinitionError) as exc_info:
        parse_definition(_nodes(M1, {"name": "w1", "address": "10.0.0.10"}))
    assert "duplicate node address" in str(exc_info.value)


def test_master_required():
    with pytest.raises(ClusterDefinitionError) as exc_info:
        parse_definition(_nodes({"name": "w1", "address": "10.0.0.11"}))
    assert "master" in str(exc_info.value)


def test_invalid_address_names_the_field():
    with pytest.raises(ClusterDefinitionError) as exc_info:
        parse_definition(_nodes(M1, {"name": "w1", "address": "10.0.0.300"}))
    assert exc_info.value.field == "nodes.1.address"


def test_address_outside_subnet():
    data = _nodes(M1, {"name": "w1", "address": "192.168.0.5"})
    data["network"] = {"node_subnet": "10.0.0.0/24"}

    with pytest.raises(ClusterDefinitionError) as exc_info:
        parse_definition(data)
    assert "w1" in str(exc_info.value)
    assert "outside node_subnet" in str(exc_info.value)


def test_unknown_keys_rejected():
    data = _nodes(M1)
    data["colour"] = "blue"
    with pytest.raises(ClusterDefinitionError) as exc_info:
        parse_definition(data)
    assert exc_info.value.field == "colour"
