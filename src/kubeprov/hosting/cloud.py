# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/hosting/cloud.py

from __future__ import annotations

import logging
import threading
from typing import Any, ClassVar, Dict, List, Optional, Tuple

import requests

from ..config.models import ClusterDefinition, CloudOptions, HostingEnvironment
from ..errors import ClusterDefinitionError, KubeprovError
from ..setup import properties
from .base import (
    PRIMARY_DISK,
    SSH_PORT,
    HostingManager,
    HostingResult,
    InfraState,
    StopMode,
    combine_states,
)

log = logging.getLogger("kubeprov")

_VM_STATES = {
    "running": InfraState.RUNNING,
    "stopped": InfraState.STOPPED,
    "deallocated": InfraState.STOPPED,
    "terminated": InfraState.STOPPED,
    "paused": InfraState.PAUSED,
    "suspended": InfraState.PAUSED,
}


class CloudApiError(KubeprovError):
    pass


class CloudHostingManager(HostingManager):
    """
    Provisioning through a provider's REST API.

    Subclasses fix the resource scope and collection names. The cluster gets a
    private network, one VM per node, and a public address whose NAT rules
    carry ingress traffic and, while internet SSH is enabled, one external
    port per node mapped to port 22.
    """

    can_manage_router = True
    generate_secure_password = True

    vm_collection: ClassVar[str] = "instances"
    data_disk_device: ClassVar[str] = "/dev/sdb"

    def __init__(self, definition: ClusterDefinition, session: Optional[requests.Session] = None):
        super().__init__(definition)
        self.session = session or requests.Session()
        self._lock = threading.Lock()
        self._public_address: Optional[str] = None
        # node name -> external SSH port, as read back from the NAT rules; None until loaded.
        self._ssh_ports: Optional[Dict[str, int]] = None

    # ------------------ api plumbing ------------------

    @property
    def options(self) -> CloudOptions:
        if self.definition.hosting.cloud is None:
            raise ClusterDefinitionError("cloud options are required", field="hosting.cloud")
        return self.definition.hosting.cloud

    def scope(self) -> str:
        raise NotImplementedError

    def _url(self, path: str) -> str:
        return f"{self.options.api_url.rstrip('/')}{self.scope()}/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.options.api_token}",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, *, ok=(200,), **kwargs) -> requests.Response:
        url = self._url(path)
        r = self.session.request(
            method,
            url,
            headers=self._headers(),
            verify=self.options.verify_tls,
            timeout=30,
            **kwargs,
        )
        if r.status_code not in ok:
            raise CloudApiError(f"{method} {url} failed: {r.status_code} {r.text}")
        return r

    # ------------------ validation ------------------

    def validate(self, definition: Optional[ClusterDefinition] = None) -> None:
        definition = definition or self.definition
        super().validate(definition)
        if definition.hosting.cloud is None:
            raise ClusterDefinitionError("cloud options are required", field="hosting.cloud")

        net = definition.network
        if not net.node_subnet:
            raise ClusterDefinitionError("cloud clusters need a node subnet", field="network.node_subnet")
        capacity = net.last_external_ssh_port - net.first_external_ssh_port + 1
        if capacity < len(definition.nodes):
            raise ClusterDefinitionError(
                f"external SSH port range holds {capacity} ports for {len(definition.nodes)} nodes",
                field="network.first_external_ssh_port",
            )

    # ------------------ resources ------------------

    def ensure_network(self) -> None:
        name = self.definition.name
        r = self._request("GET", f"networks/{name}", ok=(200, 404))
        if r.status_code == 200:
            return
        log.info("[cloud] creating network %s (%s)", name, self.definition.network.node_subnet)
        self._request(
            "PUT",
            f"networks/{name}",
            ok=(200, 201),
            json={"subnet": self.definition.network.node_subnet, "nameservers": self.definition.network.nameservers},
        )

    def ensure_public_address(self) -> str:
        name = self.definition.name
        address = self.lookup_public_address()
        if address is None:
            log.info("[cloud] reserving public address for %s", name)
            address = self._request("PUT", f"publicAddresses/{name}", ok=(200, 201)).json()["address"]
        with self._lock:
            self._public_address = address
        return address

    def lookup_public_address(self) -> Optional[str]:
        r = self._request("GET", f"publicAddresses/{self.definition.name}", ok=(200, 404))
        if r.status_code == 404:
            return None
        return r.json()["address"]

    @property
    def public_address(self) -> Optional[str]:
        return self._routing()[0]

    def vm_payload(self, node_name: str, login=None) -> Dict[str, Any]:
        node = self.definition.by_name()[node_name]
        payload: Dict[str, Any] = {
            "cluster": self.definition.name,
            "network": self.definition.name,
            "size": node.vm_size or self.options.default_vm_size,
            "privateAddress": node.address,
            "dataDisk": True,
            "tags": {"kubeprov/cluster": self.definition.name, "kubeprov/role": node.role, **node.labels},
        }
        if login is not None:
            payload["adminUsername"] = login.ssh_username
            payload["sshPublicKey"] = login.ssh_public_key
        return payload

    def ensure_vm(self, node_name: str, login=None) -> bool:
        """Create the node's VM unless it exists; returns True when created."""
        vm = self.vm_name(node_name)
        r = self._request("GET", f"{self.vm_collection}/{vm}", ok=(200, 404))
        if r.status_code == 200:
            return False
        log.info("[cloud] creating %s", vm)
        self._request("PUT", f"{self.vm_collection}/{vm}", ok=(200, 201, 202), json=self.vm_payload(node_name, login))
        return True

    def list_vms(self) -> List[Dict[str, Any]]:
        r = self._request("GET", self.vm_collection, params={"cluster": self.definition.name})
        return list(r.json().get("items", []))

    # ------------------ networking ------------------

    def ssh_port(self, node_name: str) -> int:
        names = sorted(n.name for n in self.definition.nodes)
        return self.definition.network.first_external_ssh_port + names.index(node_name)

    def nat_rules(self, *, include_ssh: bool) -> List[Dict[str, Any]]:
        net = self.definition.network
        allow = [r.cidr for r in net.management_address_rules if r.action == "allow"] or ["0.0.0.0/0"]
        workers = [n.address for n in self.definition.workers] or [n.address for n in self.definition.masters]

        rules = [
            {
                "name": rule.name,
                "protocol": rule.protocol,
                "externalPort": rule.external_port,
                "targetPort": rule.target_port,
                "targets": workers,
                "allow": ["0.0.0.0/0"],
            }
            for rule in net.ingress_rules
        ]
        if include_ssh:
            for node in sorted(self.definition.nodes, key=lambda n: n.name):
                rules.append(
                    {
                        "name": f"ssh-{node.name}",
                        "protocol": "tcp",
                        "externalPort": self.ssh_port(node.name),
                        "targetPort": SSH_PORT,
                        "targets": [node.address],
                        "allow": allow,
                    }
                )
        return rules

    def _apply_nat(self, include_ssh: bool) -> None:
        self._request(
            "PUT",
            f"publicAddresses/{self.definition.name}/natRules",
            ok=(200, 201, 204),
            json={"rules": self.nat_rules(include_ssh=include_ssh)},
        )

    def _read_ssh_ports(self) -> Dict[str, int]:
        r = self._request("GET", f"publicAddresses/{self.definition.name}/natRules", ok=(200, 404))
        if r.status_code == 404:
            return {}
        ports = {}
        for rule in r.json().get("rules", []):
            name = rule.get("name", "")
            if name.startswith("ssh-"):
                ports[name[len("ssh-"):]] = int(rule["externalPort"])
        return ports

    def _routing(self) -> Tuple[Optional[str], Dict[str, int]]:
        """Public address and per-node SSH ports as the provider reports them. Never creates anything."""
        with self._lock:
            if self._ssh_ports is not None:
                return self._public_address, self._ssh_ports
        address = self.lookup_public_address()
        ports = self._read_ssh_ports() if address else {}
        with self._lock:
            self._public_address = address
            self._ssh_ports = ports
        return address, ports

    def update_internet_routing(self) -> HostingResult:
        self._apply_nat(include_ssh=self.internet_ssh_enabled)
        return HostingResult.APPLIED

    def enable_internet_ssh(self) -> HostingResult:
        self.ensure_public_address()
        self._apply_nat(include_ssh=True)
        with self._lock:
            self._ssh_ports = {n.name: self.ssh_port(n.name) for n in self.definition.nodes}
        return HostingResult.APPLIED

    def disable_internet_ssh(self) -> HostingResult:
        self._apply_nat(include_ssh=False)
        with self._lock:
            self._ssh_ports = {}
        return HostingResult.APPLIED

    @property
    def internet_ssh_enabled(self) -> bool:
        return bool(self._routing()[1])

    def get_ssh_endpoint(self, node_name: str) -> Tuple[str, int]:
        address, ports = self._routing()
        if address and node_name in ports:
            return address, ports[node_name]
        return super().get_ssh_endpoint(node_name)

    def get_data_disk(self, node) -> str:
        return node.definition.data_disk or self.data_disk_device or PRIMARY_DISK

    # ------------------ steps ------------------

    def add_provisioning_steps(self, controller) -> None:
        controller.add_global_step("cloud/network", lambda ctx: self.ensure_network(), "create cluster network")
        controller.add_global_step("cloud/public-address", lambda ctx: self.ensure_public_address(),
                                   "reserve public address")
        controller.add_node_step(
            "cloud/vm",
            lambda node, ctx: self.ensure_vm(node.name, ctx.get_or(properties.CLUSTER_LOGIN)),
            "create virtual machines",
            idempotent=False,
        )
        controller.add_global_step("cloud/routing", lambda ctx: self.enable_internet_ssh(),
                                   "configure ingress and ssh routing")

    def add_deprovisioning_steps(self, controller) -> None:
        controller.add_global_step("cloud/remove", lambda ctx: self.remove_cluster(), "remove cloud resources")

    # ------------------ lifecycle ------------------

    def get_cluster_status(self) -> InfraState:
        vms = self.list_vms()
        return combine_states(_VM_STATES.get(vm.get("state", ""), InfraState.TRANSITIONING) for vm in vms)

    def start_node(self, node_name: str) -> None:
        self._request("POST", f"{self.vm_collection}/{self.vm_name(node_name)}/start", ok=(200, 202, 204))

    def stop_node(self, node_name: str, mode: StopMode = StopMode.GRACEFUL) -> None:
        self._request(
            "POST",
            f"{self.vm_collection}/{self.vm_name(node_name)}/stop",
            ok=(200, 202, 204),
            json={"mode": mode.value},
        )

    def start_cluster(self) -> None:
        for node in self.definition.nodes:
            self.start_node(node.name)

    def stop_cluster(self, mode: StopMode = StopMode.GRACEFUL) -> None:
        for node in self.definition.nodes:
            self.stop_node(node.name, mode)

    def remove_cluster(self) -> None:
        name = self.definition.name
        for node in self.definition.nodes:
            log.info("[cloud] deleting %s", self.vm_name(node.name))
            self._request("DELETE", f"{self.vm_collection}/{self.vm_name(node.name)}", ok=(200, 202, 204, 404))
        self._request("DELETE", f"publicAddresses/{name}", ok=(200, 202, 204, 404))
        self._request("DELETE", f"networks/{name}", ok=(200, 202, 204, 404))
        with self._lock:
            self._public_address = None
            self._ssh_ports = {}


class AwsHostingManager(CloudHostingManager):
    environment = HostingEnvironment.AWS
    vm_collection = "instances"
    data_disk_device = "/dev/nvme1n1"

    def scope(self) -> str:
        return f"/aws/regions/{self.options.region}"


class AzureHostingManager(CloudHostingManager):
    environment = HostingEnvironment.AZURE
    vm_collection = "virtualMachines"
    data_disk_device = "/dev/sdc"

    def validate(self, definition: Optional[ClusterDefinition] = None) -> None:
        definition = definition or self.definition
        super().validate(definition)
        if not definition.hosting.cloud.resource_group:
            raise ClusterDefinitionError("azure requires a resource group", field="hosting.cloud.resource_group")

    def scope(self) -> str:
        return f"/azure/resourceGroups/{self.options.resource_group}"


class GoogleHostingManager(CloudHostingManager):
    environment = HostingEnvironment.GOOGLE
    vm_collection = "instances"
    data_disk_device = "/dev/sdb"

    def scope(self) -> str:
        return f"/google/zones/{self.options.region}"
