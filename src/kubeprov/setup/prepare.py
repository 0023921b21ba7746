# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/setup/prepare.py

from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING, Optional

from ..cluster.login import ClusterLogin, generate_ssh_key_pair
from ..config.settings import SetupOptions
from ..errors import KubeprovError
from ..hosting.base import PRIMARY_DISK, generate_password
from ..observers.dispatcher import EventBus
from . import properties
from .common import new_controller
from .controller import SetupController, SetupResult

if TYPE_CHECKING:
    from ..cluster.proxy import ClusterProxy
    from ..node.proxy import NodeProxy

log = logging.getLogger("kubeprov")

SUPPORTED_OS = {"ubuntu": ("22.04", "24.04")}
DATA_DISK_FILE = "/etc/kubeprov/data-disk"


def parse_os_release(text: str) -> dict:
    values = {}
    for line in text.splitlines():
        if "=" not in line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"')
    return values


def verify_node_os(node: "NodeProxy") -> None:
    release = parse_os_release(node.download_text("/etc/os-release"))
    os_id, version = release.get("ID", ""), release.get("VERSION_ID", "")
    if version not in SUPPORTED_OS.get(os_id, ()):
        raise KubeprovError(f"[{node.name}] unsupported operating system: {os_id} {version}")


def install_node_credentials(node: "NodeProxy", login: ClusterLogin) -> None:
    user = login.ssh_username
    home = f"/home/{user}" if user != "root" else "/root"
    if login.ssh_public_key:
        auth = f"{home}/.ssh/authorized_keys"
        key = shlex.quote(login.ssh_public_key)
        node.sudo(
            f"mkdir -p {home}/.ssh && touch {auth} && "
            f"(grep -qxF {key} {auth} || echo {key} >> {auth}) && "
            f"chown -R {user}:{user} {home}/.ssh && chmod 700 {home}/.ssh && chmod 600 {auth}"
        )
    if login.ssh_password:
        node.sudo(f"echo {shlex.quote(f'{user}:{login.ssh_password}')} | chpasswd", redact=True)


def build_prepare_controller(
    cluster: "ClusterProxy",
    options: Optional[SetupOptions] = None,
    bus: Optional[EventBus] = None,
) -> SetupController:
    options = options or SetupOptions()
    definition = cluster.definition
    hosting = cluster.hosting_manager
    controller = new_controller(f"prepare [{definition.name}]", cluster, options, bus)

    def configure_hosting(ctx) -> None:
        hosting.validate(definition)
        controller.log_progress(None, "configure", f"{hosting.environment.value} hosting")

    def generate_credentials(ctx) -> None:
        login = cluster.login
        if login is None:
            sec = definition.security
            password = sec.ssh_password
            if hosting.generate_secure_password:
                password = generate_password(sec.password_length)
            private_key, public_key = generate_ssh_key_pair(f"kubeprov@{definition.name}")
            login = ClusterLogin(
                cluster=definition.name,
                ssh_username=sec.ssh_username,
                ssh_password=password,
                ssh_private_key=private_key,
                ssh_public_key=public_key,
            )
            login.save(cluster.logins_root)
            cluster.login = login
            controller.log_progress(None, "generate", "ssh credentials")

        creds = login.credentials(definition.security.ssh_password)
        cluster.update_credentials(creds)
        ctx.set(properties.CLUSTER_LOGIN, login)
        ctx.set(properties.SSH_CREDENTIALS, creds)

    def verify_os(node, ctx) -> None:
        controller.log_progress(node, "verify", "operating system")
        verify_node_os(node)

    def node_credentials(node, ctx) -> None:
        controller.log_progress(node, "install", "ssh credentials")
        install_node_credentials(node, ctx.get(properties.CLUSTER_LOGIN))

    def data_disk(node, ctx) -> None:
        disk = hosting.get_data_disk(node)
        controller.log_progress(node, "data disk", "primary" if disk == PRIMARY_DISK else disk)
        node.upload_text(DATA_DISK_FILE, disk + "\n", permissions="644")

    controller.add_global_step("prepare/configure-hosting", configure_hosting, "configure hosting manager")
    controller.add_global_step(
        "prepare/ssh-credentials",
        generate_credentials,
        "generate ssh credentials",
        produces=(properties.CLUSTER_LOGIN, properties.SSH_CREDENTIALS),
    )
    hosting.add_provisioning_steps(controller)
    controller.add_wait_until_online_step(options.online_timeout_seconds, options.poll_interval_seconds)
    controller.add_node_step("prepare/verify-os", verify_os, "verify node OS")
    controller.add_node_step(
        "prepare/node-credentials",
        node_credentials,
        "node credentials",
        requires=(properties.CLUSTER_LOGIN,),
    )
    hosting.add_post_provisioning_steps(controller)
    controller.add_node_step("prepare/data-disk", data_disk, "detect data disk")
    return controller


def prepare_cluster(
    cluster: "ClusterProxy",
    options: Optional[SetupOptions] = None,
    bus: Optional[EventBus] = None,
) -> SetupResult:
    """Provision infrastructure and bring every node to a reachable, verified state."""
    return build_prepare_controller(cluster, options, bus).run()
