# src/kubeprov/utils/ssh_runner.py

from __future__ import annotations

import io
import logging
import os
import shlex
from typing import Optional

import paramiko

from ..node.models import SshCredentials

log = logging.getLogger("kubeprov")


def _load_pkey(credentials: SshCredentials) -> Optional[paramiko.PKey]:
    if not (credentials.pkey_text or credentials.pkey_path):
        return None

    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            if credentials.pkey_text:
                return key_cls.from_private_key(io.StringIO(credentials.pkey_text))
            return key_cls.from_private_key_file(credentials.pkey_path)
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException(f"Unsupported private key format for user '{credentials.username}'")


def open_ssh(
    address: str,
    port: int,
    credentials: SshCredentials,
    *,
    connect_timeout: float = 20.0,
) -> "SSHRunner":
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = _load_pkey(credentials)

    client.connect(
        hostname=address,
        port=port,
        username=credentials.username,
        # Key first; the password is tried when the node does not know the key yet.
        password=credentials.password,
        pkey=pkey,
        timeout=connect_timeout,
        allow_agent=False,
        look_for_keys=False,
    )

    return SSHRunner(client)


class SSHRunner:
    def __init__(self, client: paramiko.SSHClient):
        self.client = client
        self._seq = 0

    def _tmp_path(self, kind: str) -> str:
        self._seq += 1
        return f"/tmp/.kubeprov.{kind}.{os.getpid()}.{self._seq}"

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
    ) -> tuple[int, str, str]:
        if sudo:
            cmd = f"sudo -H -E bash -c {shlex.quote(cmd)}"

        stdin, stdout, stderr = self.client.exec_command(cmd, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        rc = stdout.channel.recv_exit_status()
        return rc, out, err

    def put_bytes(self, content: bytes, remote_path: str, *, sudo: bool = False) -> None:
        if sudo:
            tmp = self._tmp_path("upload")
            self.put_bytes(content, tmp)
            rc, _, err = self.run(f"mv {shlex.quote(tmp)} {shlex.quote(remote_path)}", sudo=True)
            if rc != 0:
                raise IOError(f"unable to move upload into {remote_path}: {err.strip()}")
            return

        sftp = self.client.open_sftp()
        try:
            with sftp.open(remote_path, "wb") as f:
                f.write(content)
        finally:
            sftp.close()

    def put_text(self, content: str, remote_path: str, *, sudo: bool = False) -> None:
        self.put_bytes(content.encode("utf-8"), remote_path, sudo=sudo)

    def get_bytes(self, remote_path: str, *, sudo: bool = False) -> bytes:
        if sudo:
            tmp = self._tmp_path("download")
            rc, _, err = self.run(
                f"cp {shlex.quote(remote_path)} {tmp} && chmod 644 {tmp}", sudo=True
            )
            if rc != 0:
                raise IOError(f"unable to stage {remote_path} for download: {err.strip()}")
            try:
                return self.get_bytes(tmp)
            finally:
                self.run(f"rm -f {tmp}", sudo=True)

        sftp = self.client.open_sftp()
        try:
            with sftp.open(remote_path, "rb") as f:
                return f.read()
        finally:
            sftp.close()

    def get_text(self, remote_path: str, *, sudo: bool = False) -> str:
        return self.get_bytes(remote_path, sudo=sudo).decode("utf-8")

    def close(self) -> None:
        self.client.close()
