# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/config/models.py

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class HostingEnvironment(str, Enum):
    BARE_METAL = "bare-metal"
    AWS = "aws"
    AZURE = "azure"
    GOOGLE = "google"
    XENSERVER = "xenserver"
    HYPERV = "hyperv"
    LOCAL_VM = "local-vm"


class Taint(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: Optional[str] = None
    effect: Literal["NoSchedule", "PreferNoSchedule", "NoExecute"] = "NoSchedule"

    def render(self) -> str:
        value = f"={self.value}" if self.value else ""
        return f"{self.key}{value}:{self.effect}"


class NodeDefinition(BaseModel):
    """Immutable per-node metadata."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    role: Literal["master", "worker"] = "worker"
    address: str
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)

    # Hosting hints
    data_disk: Optional[str] = None          # e.g. "/dev/sdb"; None means probe or use OS disk
    vm_size: Optional[str] = None
    hypervisor_host: Optional[str] = None    # name of the hypervisor host that runs this VM

    @field_validator("name")
    @classmethod
    def _name_is_dns_label(cls, v: str) -> str:
        if not v or len(v) > 63 or not all(c.isalnum() or c == "-" for c in v) or v[0] == "-":
            raise ValueError(f"'{v}' is not a valid node name")
        return v.lower()

    @field_validator("address")
    @classmethod
    def _address_is_ip(cls, v: str) -> str:
        try:
            ipaddress.ip_address(v)
        except ValueError as e:
            raise ValueError(f"'{v}' is not a valid IP address") from e
        return v

    @property
    def is_master(self) -> bool:
        return self.role == "master"

    @property
    def is_worker(self) -> bool:
        return self.role == "worker"


class AddressRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    cidr: str = "0.0.0.0/0"
    action: Literal["allow", "deny"] = "allow"


class IngressRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    protocol: Literal["tcp", "udp"] = "tcp"
    external_port: int
    target_port: int


class NetworkOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    node_subnet: Optional[str] = None
    gateway: Optional[str] = None
    pod_subnet: str = "10.254.0.0/16"
    service_subnet: str = "10.253.0.0/16"
    nameservers: List[str] = Field(default_factory=lambda: ["1.1.1.1", "8.8.8.8"])
    ingress_rules: List[IngressRule] = Field(default_factory=list)
    management_address_rules: List[AddressRule] = Field(default_factory=list)
    first_external_ssh_port: int = 20000
    last_external_ssh_port: int = 20255

    @field_validator("node_subnet", "pod_subnet", "service_subnet")
    @classmethod
    def _valid_cidr(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"'{v}' is not a valid CIDR") from e
        return v


class CloudOptions(BaseModel):
    """Credentials and placement for the cloud hosting environments."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    api_url: str
    api_token: str
    region: str
    resource_group: Optional[str] = None
    default_vm_size: str = "standard-4"
    verify_tls: bool = True


class HypervisorHost(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    address: str
    username: str = "root"
    password: Optional[str] = None
    pkey_path: Optional[str] = None


class HypervisorOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    hosts: List[HypervisorHost] = Field(default_factory=list)
    template: str = "ubuntu-22.04"
    storage_path: Optional[str] = None
    vcpus: int = 4
    memory_mib: int = 8192
    disk_gb: int = 64


class LocalVmOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str = "22.04"
    cpus: int = 2
    memory: str = "4G"
    disk: str = "32G"


class HostingOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: HostingEnvironment = HostingEnvironment.BARE_METAL
    cloud: Optional[CloudOptions] = None
    hypervisor: Optional[HypervisorOptions] = None
    local_vm: Optional[LocalVmOptions] = None


class ComponentVersions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kubernetes: str = "1.29.4"
    calico: str = "3.27.3"
    helm: str = "3.14.4"


class SecurityOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    ssh_username: str = "sysadmin"
    ssh_password: Optional[str] = None
    ssh_pkey_path: Optional[str] = None
    password_length: int = 20


class ClusterDefinition(BaseModel):
    """
    Immutable description of the desired cluster. Created once from user
    input; hosting managers validate the environment-specific parts.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    datacenter: str = "default"
    nodes: List[NodeDefinition]
    hosting: HostingOptions = HostingOptions()
    network: NetworkOptions = NetworkOptions()
    versions: ComponentVersions = ComponentVersions()
    security: SecurityOptions = SecurityOptions()

    @model_validator(mode="after")
    def _check_nodes(self) -> "ClusterDefinition":
        if not self.nodes:
            raise ValueError("at least one node is required")

        seen_names: set[str] = set()
        seen_addresses: set[str] = set()
        for node in self.nodes:
            if node.name in seen_names:
                raise ValueError(f"duplicate node name '{node.name}'")
            if node.address in seen_addresses:
                raise ValueError(f"duplicate node address '{node.address}'")
            seen_names.add(node.name)
            seen_addresses.add(node.address)

        if not any(n.is_master for n in self.nodes):
            raise ValueError("at least one master node is required")

        if self.network.node_subnet:
            subnet = ipaddress.ip_network(self.network.node_subnet, strict=False)
            for node in self.nodes:
                if ipaddress.ip_address(node.address) not in subnet:
                    raise ValueError(
                        f"node '{node.name}' address {node.address} is outside node_subnet {subnet}"
                    )
        return self

    @property
    def masters(self) -> List[NodeDefinition]:
        return sorted((n for n in self.nodes if n.is_master), key=lambda n: n.name)

    @property
    def workers(self) -> List[NodeDefinition]:
        return sorted((n for n in self.nodes if n.is_worker), key=lambda n: n.name)

    def by_name(self) -> Dict[str, NodeDefinition]:
        return {n.name: n for n in self.nodes}
