# src/kubeprov/cluster/login.py

from __future__ import annotations

import io
import logging
import os
from pathlib import Path
from typing import Optional, Tuple

import paramiko
import yaml
from pydantic import BaseModel, ConfigDict

from ..config.settings import kubeprov_home
from ..node.models import SshCredentials

log = logging.getLogger("kubeprov")


def logins_dir(root: Optional[Path] = None) -> Path:
    return (root or kubeprov_home()) / "logins"


def generate_ssh_key_pair(comment: str, bits: int = 3072) -> Tuple[str, str]:
    """Returns (private PEM, public OpenSSH line)."""
    key = paramiko.RSAKey.generate(bits)
    buf = io.StringIO()
    key.write_private_key(buf)
    return buf.getvalue(), f"{key.get_name()} {key.get_base64()} {comment}"


class ClusterLogin(BaseModel):
    """
    Operator-side secrets for one cluster: the SSH identity installed on its
    nodes, the kubeadm join command and where the admin kubeconfig lives.
    """

    model_config = ConfigDict(extra="ignore")

    cluster: str
    ssh_username: str
    ssh_password: Optional[str] = None
    ssh_private_key: Optional[str] = None
    ssh_public_key: Optional[str] = None
    setup_pending: bool = True
    join_command: Optional[str] = None
    kubeconfig_path: Optional[str] = None
    kube_context: Optional[str] = None

    @staticmethod
    def path_for(cluster: str, root: Optional[Path] = None) -> Path:
        return logins_dir(root) / f"{cluster}.yaml"

    @classmethod
    def load(cls, cluster: str, root: Optional[Path] = None) -> Optional["ClusterLogin"]:
        path = cls.path_for(cluster, root)
        if not path.exists():
            return None
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)

    def save(self, root: Optional[Path] = None) -> Path:
        path = self.path_for(self.cluster, root)
        path.parent.mkdir(parents=True, exist_ok=True)
        text = yaml.safe_dump(self.model_dump(), sort_keys=False)
        # Holds the node key and password: create owner-only, then swap in.
        tmp = path.with_name(f".{path.name}.tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        log.debug("saved login for %s to %s", self.cluster, path)
        return path

    @classmethod
    def delete(cls, cluster: str, root: Optional[Path] = None) -> bool:
        path = cls.path_for(cluster, root)
        if not path.exists():
            return False
        path.unlink()
        log.debug("deleted login %s", path)
        return True

    def credentials(self, fallback_password: Optional[str] = None) -> SshCredentials:
        """
        Node credentials: the generated key, plus a password for nodes that
        have not had the key installed yet.
        """
        return SshCredentials(
            username=self.ssh_username,
            password=fallback_password or self.ssh_password,
            pkey_text=self.ssh_private_key,
        )
