# src/kubeprov/hosting/local_vm.py

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import yaml

from ..config.models import ClusterDefinition, HostingEnvironment, LocalVmOptions
from ..errors import ClusterDefinitionError, KubeprovError
from ..setup import properties
from .base import SSH_PORT, HostingManager, InfraState, StopMode, combine_states

log = logging.getLogger("kubeprov")

_STATES = {
    "running": InfraState.RUNNING,
    "stopped": InfraState.STOPPED,
    "suspended": InfraState.PAUSED,
    "starting": InfraState.TRANSITIONING,
    "restarting": InfraState.TRANSITIONING,
    "delayed shutdown": InfraState.TRANSITIONING,
}

Runner = Callable[[Sequence[str]], subprocess.CompletedProcess]


class MultipassError(KubeprovError):
    pass


def _run(argv: Sequence[str]) -> subprocess.CompletedProcess:
    return subprocess.run(list(argv), capture_output=True, text=True, check=False)


def cloud_init(username: str, public_key: str) -> str:
    return "#cloud-config\n" + yaml.safe_dump(
        {
            "users": [
                "default",
                {
                    "name": username,
                    "shell": "/bin/bash",
                    "sudo": "ALL=(ALL) NOPASSWD:ALL",
                    "ssh_authorized_keys": [public_key],
                },
            ]
        },
        sort_keys=False,
    )


class LocalVmHostingManager(HostingManager):
    """
    Development clusters as multipass VMs on the operator's machine. VMs get
    their addresses from multipass, so SSH endpoints are looked up rather
    than taken from the definition.
    """

    environment = HostingEnvironment.LOCAL_VM
    max_parallel = 1

    def __init__(self, definition: ClusterDefinition, runner: Optional[Runner] = None):
        super().__init__(definition)
        self._runner = runner or _run
        self._addresses: Dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def options(self) -> LocalVmOptions:
        return self.definition.hosting.local_vm or LocalVmOptions()

    def validate(self, definition: Optional[ClusterDefinition] = None) -> None:
        definition = definition or self.definition
        super().validate(definition)
        if self._runner is _run and shutil.which("multipass") is None:
            raise ClusterDefinitionError("multipass CLI not found in PATH", field="hosting.environment")

    def multipass(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        argv: List[str] = ["multipass", *args]
        log.debug("$ %s", " ".join(argv))
        cp = self._runner(argv)
        if check and cp.returncode != 0:
            raise MultipassError(f"{' '.join(argv[:3])} failed (rc={cp.returncode}): {cp.stderr.strip()}")
        return cp

    def _info(self) -> Dict[str, dict]:
        cp = self.multipass("info", "--all", "--format", "json", check=False)
        if cp.returncode != 0:
            return {}
        try:
            return json.loads(cp.stdout).get("info", {})
        except json.JSONDecodeError as exc:
            raise MultipassError(f"unreadable multipass info output: {exc}") from exc

    def vm_state(self, node_name: str, info: Optional[Dict[str, dict]] = None) -> InfraState:
        entry = (info if info is not None else self._info()).get(self.vm_name(node_name))
        if entry is None:
            return InfraState.NOT_PROVISIONED
        return _STATES.get(str(entry.get("state", "")).lower(), InfraState.UNKNOWN)

    def ensure_vm(self, node_name: str, login=None) -> bool:
        vm = self.vm_name(node_name)
        if self.vm_state(node_name) is not InfraState.NOT_PROVISIONED:
            return False

        opts = self.options
        argv = ["launch", "--name", vm, "--cpus", str(opts.cpus), "--memory", opts.memory, "--disk", opts.disk]
        log.info("[local-vm] launching %s (%s)", vm, opts.image)
        if login is None:
            self.multipass(*argv, opts.image)
            return True

        with tempfile.TemporaryDirectory(prefix="kubeprov-") as tmp:
            path = Path(tmp) / "cloud-init.yaml"
            path.write_text(cloud_init(login.ssh_username, login.ssh_public_key))
            self.multipass(*argv, "--cloud-init", str(path), opts.image)
        return True

    def get_ssh_endpoint(self, node_name: str) -> Tuple[str, int]:
        with self._lock:
            cached = self._addresses.get(node_name)
        if cached:
            return cached, SSH_PORT

        address, port = super().get_ssh_endpoint(node_name)
        entry = self._info().get(self.vm_name(node_name)) or {}
        ipv4 = entry.get("ipv4") or []
        if ipv4:
            address = ipv4[0]
            with self._lock:
                self._addresses[node_name] = address
        return address, port

    def add_provisioning_steps(self, controller) -> None:
        controller.add_node_step(
            "local-vm/launch",
            lambda node, ctx: self.ensure_vm(node.name, ctx.get_or(properties.CLUSTER_LOGIN)),
            "launch local virtual machines",
            idempotent=False,
        )

    def add_deprovisioning_steps(self, controller) -> None:
        controller.add_global_step("local-vm/remove", lambda ctx: self.remove_cluster(), "delete local virtual machines")

    def get_cluster_status(self) -> InfraState:
        info = self._info()
        states = [self.vm_state(n.name, info) for n in self.definition.nodes]
        return combine_states(s for s in states if s is not InfraState.NOT_PROVISIONED)

    def start_node(self, node_name: str) -> None:
        self.multipass("start", self.vm_name(node_name))

    def stop_node(self, node_name: str, mode: StopMode = StopMode.GRACEFUL) -> None:
        vm = self.vm_name(node_name)
        if mode is StopMode.PAUSE:
            self.multipass("suspend", vm)
        elif mode is StopMode.TURN_OFF:
            self.multipass("stop", "--force", vm)
        else:
            self.multipass("stop", vm)

    def start_cluster(self) -> None:
        self.multipass("start", *(self.vm_name(n.name) for n in self.definition.nodes))

    def stop_cluster(self, mode: StopMode = StopMode.GRACEFUL) -> None:
        for node in self.definition.nodes:
            self.stop_node(node.name, mode)

    def remove_cluster(self) -> None:
        info = self._info()
        vms = [self.vm_name(n.name) for n in self.definition.nodes if self.vm_name(n.name) in info]
        if vms:
            log.info("[local-vm] deleting %s", ", ".join(vms))
            self.multipass("delete", "--purge", *vms)
        with self._lock:
            self._addresses.clear()
