# src/kubeprov/hosting/registry.py

from __future__ import annotations

import logging
from typing import Dict, Type

from ..config.models import ClusterDefinition, HostingEnvironment
from ..errors import ClusterDefinitionError
from .bare_metal import BareMetalHostingManager
from .base import HostingManager
from .cloud import AwsHostingManager, AzureHostingManager, GoogleHostingManager
from .hypervisor import HyperVHostingManager, XenServerHostingManager
from .local_vm import LocalVmHostingManager

log = logging.getLogger("kubeprov")

HOSTING_MANAGERS: Dict[HostingEnvironment, Type[HostingManager]] = {
    HostingEnvironment.BARE_METAL: BareMetalHostingManager,
    HostingEnvironment.AWS: AwsHostingManager,
    HostingEnvironment.AZURE: AzureHostingManager,
    HostingEnvironment.GOOGLE: GoogleHostingManager,
    HostingEnvironment.XENSERVER: XenServerHostingManager,
    HostingEnvironment.HYPERV: HyperVHostingManager,
    HostingEnvironment.LOCAL_VM: LocalVmHostingManager,
}


def get_hosting_manager(definition: ClusterDefinition, **kwargs) -> HostingManager:
    """
    Instantiate and validate the hosting manager for ``definition``.
    Extra keyword arguments are passed to the manager (sessions, runners).
    """
    env = definition.hosting.environment
    cls = HOSTING_MANAGERS.get(env)
    if cls is None:
        raise ClusterDefinitionError(f"no hosting manager for '{env}'", field="hosting.environment")

    manager = cls(definition, **kwargs)
    manager.validate(definition)
    log.debug("hosting manager: %s", manager)
    return manager
