# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/setup/kube.py

from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING, Optional

from ..config.models import ClusterDefinition
from ..config.settings import SetupOptions, kubeprov_home
from ..errors import KubeprovError
from ..k8s.client import RetryingKubeClient
from ..k8s.health import KubeHealthState, get_cluster_health
from ..observers.dispatcher import EventBus
from ..readiness.poller import wait_for
from ..utils.retry import join_with_retry
from . import properties
from .common import new_controller
from .controller import SetupController, SetupResult

if TYPE_CHECKING:
    from ..cluster.proxy import ClusterProxy
    from ..node.proxy import NodeProxy

log = logging.getLogger("kubeprov")

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
API_PORT = 6443


def prerequisites_script(definition: ClusterDefinition) -> str:
    version = definition.versions.kubernetes
    minor = ".".join(version.split(".")[:2])
    return f"""#!/usr/bin/env bash
set -euo pipefail
export DEBIAN_FRONTEND=noninteractive

swapoff -a
sed -i '/\\sswap\\s/s/^/#/' /etc/fstab

cat > /etc/modules-load.d/k8s.conf <<EOF
overlay
br_netfilter
EOF
modprobe overlay
modprobe br_netfilter

cat > /etc/sysctl.d/k8s.conf <<EOF
net.bridge.bridge-nf-call-iptables  = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward                 = 1
EOF
sysctl --system >/dev/null

apt-get update -q
apt-get install -yq apt-transport-https ca-certificates curl gpg containerd
mkdir -p /etc/containerd
containerd config default | sed 's/SystemdCgroup = false/SystemdCgroup = true/' > /etc/containerd/config.toml
systemctl restart containerd

mkdir -p /etc/apt/keyrings
curl -fsSL https://pkgs.k8s.io/core:/stable:/v{minor}/deb/Release.key | gpg --dearmor --yes -o /etc/apt/keyrings/kubernetes.gpg
echo 'deb [signed-by=/etc/apt/keyrings/kubernetes.gpg] https://pkgs.k8s.io/core:/stable:/v{minor}/deb/ /' > /etc/apt/sources.list.d/kubernetes.list
apt-get update -q
apt-get install -yq kubelet={version}-* kubeadm={version}-* kubectl={version}-*
apt-mark hold kubelet kubeadm kubectl
systemctl enable --now kubelet
"""


def kubeadm_init_command(definition: ClusterDefinition, master_address: str) -> str:
    net = definition.network
    return " ".join(
        [
            "kubeadm init",
            f"--kubernetes-version=v{definition.versions.kubernetes}",
            f"--control-plane-endpoint={master_address}:{API_PORT}",
            f"--apiserver-advertise-address={master_address}",
            f"--pod-network-cidr={net.pod_subnet}",
            f"--service-cidr={net.service_subnet}",
            "--upload-certs",
        ]
    )


def join_node(node: "NodeProxy", command: str, options: SetupOptions) -> int:
    """Run a kubeadm join with the join retry protocol; returns the attempt that succeeded."""

    def attempt():
        response = node.sudo(command, redact=True, check=False)
        if not response.success:
            # Leave the node clean for the next attempt.
            node.sudo("kubeadm reset -f", check=False)
        return response

    return join_with_retry(
        attempt,
        max_attempts=options.join_attempts,
        delay=options.join_delay_seconds,
        description=f"join {node.name} to the cluster",
    )


def build_setup_controller(
    cluster: "ClusterProxy",
    options: Optional[SetupOptions] = None,
    bus: Optional[EventBus] = None,
) -> SetupController:
    options = options or SetupOptions()
    definition = cluster.definition
    if cluster.login is None:
        raise KubeprovError(f"cluster '{definition.name}' has no login; run prepare first")

    login = cluster.login
    first_master = cluster.first_master
    controller = new_controller(f"setup [{definition.name}]", cluster, options, bus)

    def prerequisites(node, ctx) -> None:
        controller.log_progress(node, "install", f"kubernetes v{definition.versions.kubernetes}")
        node.upload_text("/tmp/kubeprov-prereqs.sh", prerequisites_script(definition), permissions="700")
        node.sudo("/tmp/kubeprov-prereqs.sh", timeout=30 * 60)

    def init_control_plane(ctx) -> None:
        controller.log_progress(first_master, "initialize", "control plane")
        first_master.invoke_idempotent(
            "kubernetes/init",
            lambda: first_master.sudo(kubeadm_init_command(definition, first_master.address), timeout=30 * 60),
        )

        join = first_master.sudo("kubeadm token create --print-join-command", redact=True).stdout.strip()
        cert_key = first_master.sudo(
            "kubeadm init phase upload-certs --upload-certs 2>/dev/null | tail -n 1", redact=True
        ).stdout.strip()

        path = kubeprov_home() / "kubeconfigs" / f"{definition.name}.conf"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(first_master.download_text(ADMIN_KUBECONFIG))
        path.chmod(0o600)

        login.join_command = join
        login.kubeconfig_path = str(path)
        login.save(cluster.logins_root)

        ctx.set(properties.JOIN_COMMAND, join)
        ctx.set(properties.CONTROL_PLANE_JOIN_COMMAND, f"{join} --control-plane --certificate-key {cert_key}")
        ctx.set(properties.KUBECONFIG_PATH, str(path))

    def join(node, ctx) -> None:
        key = properties.CONTROL_PLANE_JOIN_COMMAND if node.is_master else properties.JOIN_COMMAND
        command = ctx.get(key)
        if node.is_master:
            command += f" --apiserver-advertise-address={node.address}"
        controller.log_progress(node, "join", "control plane" if node.is_master else "as worker")
        join_node(node, command, options)

    def connect(ctx) -> None:
        kube = RetryingKubeClient.from_kubeconfig(ctx.get(properties.KUBECONFIG_PATH))
        cluster.set_k8s(kube)
        ctx.set(properties.K8S_CLIENT, kube)

    def install_network(ctx) -> None:
        manifest = (
            "https://raw.githubusercontent.com/projectcalico/calico/"
            f"v{definition.versions.calico}/manifests/calico.yaml"
        )
        controller.log_progress(first_master, "install", f"calico v{definition.versions.calico}")
        first_master.invoke_idempotent(
            "kubernetes/cni",
            lambda: first_master.sudo(f"kubectl --kubeconfig={ADMIN_KUBECONFIG} apply -f {shlex.quote(manifest)}"),
        )

    def wait_for_control_plane(ctx) -> None:
        kube = ctx.get(properties.K8S_CLIENT)
        controller.log_progress(None, "wait", "for control plane")
        wait_for(
            lambda: get_cluster_health(kube).state is KubeHealthState.HEALTHY,
            options.operation_timeout_seconds,
            options.poll_interval_seconds,
            description="control plane",
            ignore_errors=True,
            bus=controller.bus,
            run_ctx=controller.run_ctx,
        )

    def label_nodes(ctx) -> None:
        kube = ctx.get(properties.K8S_CLIENT)
        for node in definition.nodes:
            if not node.labels and not node.taints:
                continue
            body = {"metadata": {"labels": dict(node.labels)}}
            if node.taints:
                body["spec"] = {
                    "taints": [
                        {"key": t.key, "value": t.value, "effect": t.effect} for t in node.taints
                    ]
                }
            kube.core.patch_node(node.name, body)

    def finish(ctx) -> None:
        login.setup_pending = False
        login.save(cluster.logins_root)

    controller.add_node_step("kubernetes/prerequisites", prerequisites, "install kubernetes packages")
    controller.add_global_step(
        "kubernetes/init",
        init_control_plane,
        "initialize control plane",
        produces=(properties.JOIN_COMMAND, properties.CONTROL_PLANE_JOIN_COMMAND, properties.KUBECONFIG_PATH),
    )
    controller.add_node_step(
        "kubernetes/join",
        join,
        "join nodes",
        predicate=lambda node: node.name != first_master.name,
        requires=(properties.JOIN_COMMAND, properties.CONTROL_PLANE_JOIN_COMMAND),
    )
    controller.add_global_step(
        "kubernetes/connect",
        connect,
        "connect cluster",
        requires=(properties.KUBECONFIG_PATH,),
        produces=(properties.K8S_CLIENT,),
    )
    controller.add_global_step("kubernetes/network", install_network, "install pod network")
    controller.add_global_step(
        "kubernetes/wait-for-control-plane",
        wait_for_control_plane,
        "wait for control plane",
        requires=(properties.K8S_CLIENT,),
    )
    controller.add_global_step("kubernetes/node-labels", label_nodes, "apply node labels and taints",
                               requires=(properties.K8S_CLIENT,))
    controller.add_global_step("kubernetes/finish", finish, "record setup complete")
    return controller


def setup_cluster(
    cluster: "ClusterProxy",
    options: Optional[SetupOptions] = None,
    bus: Optional[EventBus] = None,
) -> SetupResult:
    """Bootstrap Kubernetes on a prepared cluster."""
    return build_setup_controller(cluster, options, bus).run()
