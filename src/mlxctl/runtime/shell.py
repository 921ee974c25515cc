"""
Command execution on a node: over SSH (fabric) or on this host (invoke).

Both shells return invoke ``Result`` objects (``ok``, ``stdout``, ``stderr``,
``exited``) and translate transport failures into ``AuthFailed`` /
``ConnectionFailed``.
"""

import shlex
import socket
import subprocess
from abc import ABC, abstractmethod
from typing import Optional

from fabric import Connection
from invoke import Context
from invoke.exceptions import CommandTimedOut
from loguru import logger
from paramiko.ssh_exception import AuthenticationException, SSHException

from mlxctl.errors import AuthFailed, BackendUnreachable, ConnectionFailed
from mlxctl.runtime.base import LineStream


class Shell(ABC):
    name: str

    @abstractmethod
    def run(self, command: str, timeout: Optional[float] = None):
        pass

    @abstractmethod
    def stream(self, command: str) -> LineStream:
        pass

    def open(self):
        pass

    def put(self, local_path: str, remote_path: str):
        raise NotImplementedError

    def close(self):
        pass


class SSHShell(Shell):
    def __init__(self, name: str, connection: Connection):
        self.name = name
        self.conn = connection

    def _guard(self, action, *args, **kwargs):
        try:
            return action(*args, **kwargs)
        except AuthenticationException as e:
            raise AuthFailed(f"[{self.name}] SSH authentication failed: {e}")
        except CommandTimedOut as e:
            raise BackendUnreachable(f"[{self.name}] command timed out after {e.timeout}s")
        except (SSHException, socket.error, EOFError) as e:
            raise ConnectionFailed(f"[{self.name}] SSH connection failed: {e}")

    def open(self):
        self._guard(self.conn.open)

    def run(self, command: str, timeout: Optional[float] = None):
        logger.debug(f"[{self.name}] $ {command}")
        return self._guard(self.conn.run, command, warn=True, hide=True, in_stream=False, timeout=timeout)

    def put(self, local_path: str, remote_path: str):
        return self._guard(self.conn.put, local_path, remote_path)

    def _open_channel(self, command: str):
        self.conn.open()
        channel = self.conn.client.get_transport().open_session()
        channel.set_combine_stderr(True)
        channel.exec_command(command)
        return channel

    def stream(self, command: str) -> LineStream:
        logger.debug(f"[{self.name}] $ {command} (streaming)")
        channel = self._guard(self._open_channel, command)
        return LineStream(channel.makefile("r"), cancel=channel.close)

    def close(self):
        self.conn.close()


class LocalShell(Shell):
    def __init__(self, name: str = "local"):
        self.name = name
        self.context = Context()

    def run(self, command: str, timeout: Optional[float] = None):
        logger.debug(f"[{self.name}] $ {command}")
        try:
            return self.context.run(command, warn=True, hide=True, in_stream=False, timeout=timeout)
        except CommandTimedOut as e:
            raise BackendUnreachable(f"[{self.name}] command timed out after {e.timeout}s")

    def put(self, local_path: str, remote_path: str):
        remote = shlex.quote(remote_path)
        result = self.run(f"mkdir -p \"$(dirname {remote})\" && cp {shlex.quote(local_path)} {remote}")
        if not result.ok:
            raise ConnectionFailed(f"[{self.name}] copy failed: {result.stderr.strip()}")

    def stream(self, command: str) -> LineStream:
        logger.debug(f"[{self.name}] $ {command} (streaming)")
        process = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
        return LineStream(process.stdout, cancel=process.terminate)
