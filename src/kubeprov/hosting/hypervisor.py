# src/kubeprov/hosting/hypervisor.py

from __future__ import annotations

import logging
import shlex
from typing import Callable, ClassVar, Dict, List, Optional

from ..config.models import ClusterDefinition, HostingEnvironment, HypervisorHost, HypervisorOptions
from ..errors import ClusterDefinitionError, KubeprovError
from ..node.models import SshCredentials
from ..utils.ssh_runner import SSHRunner, open_ssh
from .base import PRIMARY_DISK, HostingManager, InfraState, StopMode, combine_states

log = logging.getLogger("kubeprov")

HostConnector = Callable[[HypervisorHost], SSHRunner]


class HypervisorCommandError(KubeprovError):
    pass


def _connect_host(host: HypervisorHost) -> SSHRunner:
    creds = SshCredentials(username=host.username, password=host.password, pkey_path=host.pkey_path)
    return open_ssh(host.address, 22, creds)


class HypervisorHostingManager(HostingManager):
    """
    VMs on self-managed hypervisor hosts, driven by commands issued to each
    host over SSH. Subclasses supply the host's command dialect.
    """

    data_disk_device: ClassVar[str] = "/dev/sdb"

    def __init__(self, definition: ClusterDefinition, connector: Optional[HostConnector] = None):
        super().__init__(definition)
        self._connector = connector or _connect_host

    @property
    def options(self) -> HypervisorOptions:
        if self.definition.hosting.hypervisor is None:
            raise ClusterDefinitionError("hypervisor options are required", field="hosting.hypervisor")
        return self.definition.hosting.hypervisor

    def validate(self, definition: Optional[ClusterDefinition] = None) -> None:
        definition = definition or self.definition
        super().validate(definition)
        opts = definition.hosting.hypervisor
        if opts is None or not opts.hosts:
            raise ClusterDefinitionError("at least one hypervisor host is required", field="hosting.hypervisor.hosts")

        names = {h.name for h in opts.hosts}
        for node in definition.nodes:
            if node.hypervisor_host is None and len(opts.hosts) > 1:
                raise ClusterDefinitionError(
                    f"node '{node.name}' must name its hypervisor host", field=f"nodes.{node.name}.hypervisor_host"
                )
            if node.hypervisor_host is not None and node.hypervisor_host not in names:
                raise ClusterDefinitionError(
                    f"node '{node.name}' references unknown hypervisor host '{node.hypervisor_host}'",
                    field=f"nodes.{node.name}.hypervisor_host",
                )

    # ------------------ host commands ------------------

    def host_for(self, node_name: str) -> HypervisorHost:
        node = self.definition.by_name()[node_name]
        hosts = self.options.hosts
        if node.hypervisor_host is None:
            return hosts[0]
        return next(h for h in hosts if h.name == node.hypervisor_host)

    def run_on_host(self, host: HypervisorHost, command: str, *, check: bool = True) -> str:
        runner = self._connector(host)
        try:
            log.debug("[%s] $ %s", host.name, command)
            rc, out, err = runner.run(command)
        finally:
            runner.close()
        if check and rc != 0:
            raise HypervisorCommandError(f"[{host.name}] {command} failed (rc={rc}): {err.strip() or out.strip()}")
        return out.strip()

    # Dialect, per hypervisor.
    def cmd_state(self, vm: str) -> str:
        raise NotImplementedError

    def cmd_create(self, vm: str, node_name: str) -> str:
        raise NotImplementedError

    def cmd_start(self, vm: str) -> str:
        raise NotImplementedError

    def cmd_stop(self, vm: str, mode: StopMode) -> str:
        raise NotImplementedError

    def cmd_remove(self, vm: str) -> str:
        raise NotImplementedError

    def parse_state(self, raw: str) -> InfraState:
        raise NotImplementedError

    # ------------------ operations ------------------

    def vm_state(self, node_name: str) -> InfraState:
        raw = self.run_on_host(self.host_for(node_name), self.cmd_state(self.vm_name(node_name)), check=False)
        return self.parse_state(raw)

    def ensure_vm(self, node_name: str) -> bool:
        if self.vm_state(node_name) is not InfraState.NOT_PROVISIONED:
            return False
        vm = self.vm_name(node_name)
        host = self.host_for(node_name)
        log.info("[%s] creating %s", host.name, vm)
        self.run_on_host(host, self.cmd_create(vm, node_name))
        self.run_on_host(host, self.cmd_start(vm))
        return True

    def add_provisioning_steps(self, controller) -> None:
        controller.add_node_step(
            f"{self.environment.value}/vm",
            lambda node, ctx: self.ensure_vm(node.name),
            "create virtual machines",
            idempotent=False,
        )

    def add_deprovisioning_steps(self, controller) -> None:
        controller.add_global_step(f"{self.environment.value}/remove", lambda ctx: self.remove_cluster(),
                                   "remove virtual machines")

    def get_data_disk(self, node) -> str:
        return node.definition.data_disk or self.data_disk_device or PRIMARY_DISK

    def get_cluster_status(self) -> InfraState:
        states = [self.vm_state(n.name) for n in self.definition.nodes]
        return combine_states(s for s in states if s is not InfraState.NOT_PROVISIONED)

    def start_node(self, node_name: str) -> None:
        self.run_on_host(self.host_for(node_name), self.cmd_start(self.vm_name(node_name)))

    def stop_node(self, node_name: str, mode: StopMode = StopMode.GRACEFUL) -> None:
        self.run_on_host(self.host_for(node_name), self.cmd_stop(self.vm_name(node_name), mode))

    def start_cluster(self) -> None:
        for node in self.definition.nodes:
            self.start_node(node.name)

    def stop_cluster(self, mode: StopMode = StopMode.GRACEFUL) -> None:
        for node in self.definition.nodes:
            self.stop_node(node.name, mode)

    def remove_cluster(self) -> None:
        for node in self.definition.nodes:
            if self.vm_state(node.name) is InfraState.NOT_PROVISIONED:
                continue
            host = self.host_for(node.name)
            log.info("[%s] removing %s", host.name, self.vm_name(node.name))
            self.run_on_host(host, self.cmd_remove(self.vm_name(node.name)))


class XenServerHostingManager(HypervisorHostingManager):
    environment = HostingEnvironment.XENSERVER
    data_disk_device = "/dev/xvdb"

    _STATES: ClassVar[Dict[str, InfraState]] = {
        "running": InfraState.RUNNING,
        "halted": InfraState.STOPPED,
        "paused": InfraState.PAUSED,
        "suspended": InfraState.PAUSED,
    }

    def cmd_state(self, vm: str) -> str:
        return f"xe vm-list name-label={shlex.quote(vm)} params=power-state --minimal"

    def cmd_create(self, vm: str, node_name: str) -> str:
        opts = self.options
        memory = opts.memory_mib * 1024 * 1024
        parts: List[str] = [
            f"uuid=$(xe vm-install template={shlex.quote(opts.template)} new-name-label={shlex.quote(vm)})",
            f"xe vm-param-set uuid=$uuid VCPUs-max={opts.vcpus} VCPUs-at-startup={opts.vcpus}",
            f"xe vm-memory-limits-set uuid=$uuid static-min={memory} static-max={memory} "
            f"dynamic-min={memory} dynamic-max={memory}",
        ]
        if opts.storage_path:
            parts.append(f"xe vm-disk-add uuid=$uuid sr-uuid={shlex.quote(opts.storage_path)} disk-size={opts.disk_gb}GiB device=1")
        return " && ".join(parts)

    def cmd_start(self, vm: str) -> str:
        return f"xe vm-start vm={shlex.quote(vm)}"

    def cmd_stop(self, vm: str, mode: StopMode) -> str:
        if mode is StopMode.PAUSE:
            return f"xe vm-suspend vm={shlex.quote(vm)}"
        force = " --force" if mode is StopMode.TURN_OFF else ""
        return f"xe vm-shutdown vm={shlex.quote(vm)}{force}"

    def cmd_remove(self, vm: str) -> str:
        return f"xe vm-uninstall vm={shlex.quote(vm)} force=true"

    def parse_state(self, raw: str) -> InfraState:
        if not raw:
            return InfraState.NOT_PROVISIONED
        return self._STATES.get(raw.split(",")[0].strip().lower(), InfraState.TRANSITIONING)


class HyperVHostingManager(HypervisorHostingManager):
    environment = HostingEnvironment.HYPERV
    requires_admin_privileges = True

    _STATES: ClassVar[Dict[str, InfraState]] = {
        "running": InfraState.RUNNING,
        "off": InfraState.STOPPED,
        "saved": InfraState.PAUSED,
        "paused": InfraState.PAUSED,
    }

    @staticmethod
    def _ps(script: str) -> str:
        return f"powershell -NoProfile -NonInteractive -Command {shlex.quote(script)}"

    def cmd_state(self, vm: str) -> str:
        return self._ps(f"Get-VM -Name '{vm}' -ErrorAction SilentlyContinue | Select-Object -ExpandProperty State")

    def cmd_create(self, vm: str, node_name: str) -> str:
        opts = self.options
        root = opts.storage_path or "C:\\kubeprov"
        return self._ps(
            f"New-VM -Name '{vm}' -Generation 2 -MemoryStartupBytes {opts.memory_mib}MB "
            f"-VHDPath (Copy-Item '{opts.template}' '{root}\\{vm}.vhdx' -PassThru).FullName; "
            f"Set-VMProcessor -VMName '{vm}' -Count {opts.vcpus}; "
            f"New-VHD -Path '{root}\\{vm}-data.vhdx' -SizeBytes {opts.disk_gb}GB -Dynamic | "
            f"Add-VMHardDiskDrive -VMName '{vm}'"
        )

    def cmd_start(self, vm: str) -> str:
        return self._ps(f"Start-VM -Name '{vm}'")

    def cmd_stop(self, vm: str, mode: StopMode) -> str:
        if mode is StopMode.PAUSE:
            return self._ps(f"Save-VM -Name '{vm}'")
        flag = " -TurnOff" if mode is StopMode.TURN_OFF else ""
        return self._ps(f"Stop-VM -Name '{vm}' -Force{flag}")

    def cmd_remove(self, vm: str) -> str:
        return self._ps(f"Stop-VM -Name '{vm}' -TurnOff -Force -ErrorAction SilentlyContinue; Remove-VM -Name '{vm}' -Force")

    def parse_state(self, raw: str) -> InfraState:
        if not raw:
            return InfraState.NOT_PROVISIONED
        return self._STATES.get(raw.strip().lower(), InfraState.TRANSITIONING)
