# src/kubeprov/hosting/bare_metal.py

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Optional

from ..config.models import ClusterDefinition, HostingEnvironment
from ..errors import ClusterDefinitionError
from .base import PRIMARY_DISK, HostingManager

if TYPE_CHECKING:
    from ..node.proxy import NodeProxy

log = logging.getLogger("kubeprov")


def pick_unused_disk(lsblk_json: str) -> Optional[str]:
    """
    Choose the first whole disk with no partitions and no mountpoint from
    ``lsblk --json -p -o NAME,TYPE,MOUNTPOINT`` output.
    """
    devices = json.loads(lsblk_json).get("blockdevices", [])
    candidates = sorted(
        d["name"]
        for d in devices
        if d.get("type") == "disk" and not d.get("children") and not d.get("mountpoint")
    )
    return candidates[0] if candidates else None


class BareMetalHostingManager(HostingManager):
    """Machines that already exist; nothing to create, route or power-cycle."""

    environment = HostingEnvironment.BARE_METAL

    def validate(self, definition: Optional[ClusterDefinition] = None) -> None:
        definition = definition or self.definition
        super().validate(definition)
        hosting = definition.hosting
        if hosting.cloud or hosting.hypervisor or hosting.local_vm:
            raise ClusterDefinitionError(
                "bare-metal clusters cannot specify cloud, hypervisor or local-vm options",
                field="hosting",
            )

    def get_data_disk(self, node: "NodeProxy") -> str:
        if node.definition.data_disk:
            return node.definition.data_disk

        response = node.sudo("lsblk --json -p -o NAME,TYPE,MOUNTPOINT")
        disk = pick_unused_disk(response.stdout)
        log.debug("[%s] data disk probe: %s", node.name, disk or PRIMARY_DISK)
        return disk or PRIMARY_DISK
