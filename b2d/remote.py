"""Guest introspection over SSH and the serial console.

Every query is a one-shot remote command whose output is parsed locally. The
parsers are kept separate from the transport so they can be exercised on
captured output.
"""

from __future__ import annotations

import re
import socket
import subprocess
import tarfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, List, Optional, Sequence, Tuple

from b2d.constants import (
    CERTS_COMMAND,
    DAEMON_ARGS_COMMAND,
    GUEST_USER,
    IP_COMMAND,
    SERIAL_INET_RE,
    SERIAL_INTERVAL,
    SERIAL_TIMEOUT,
    SOCKET_COMMAND,
    SOCKET_URL_RE,
    SOCKET_WILDCARD_HOST,
    SSH_TIMEOUT,
    TLS_FLAGS,
)
from b2d.exceptions import CommandFailed, ManagerError, ParseError, PollTimeout, ToolUnavailable
from b2d.utils import ensure_directory, log, run


@dataclass(frozen=True)
class SSHTarget:
    """How to reach the guest's sshd through the forwarded port."""

    ssh: str
    key: Path
    port: int
    host: str = "localhost"
    user: str = GUEST_USER

    def base_cmd(self) -> List[str]:
        # The guest is created locally and its host key changes on every
        # fresh disk, so host key checking is off.
        return [
            self.ssh,
            "-o", "IdentitiesOnly=yes",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=quiet",
            "-p", str(self.port),
            "-i", str(self.key),
            f"{self.user}@{self.host}",
        ]

    def command(self, *remote: str) -> List[str]:
        return self.base_cmd() + list(remote)


class GuestShell:
    """Runs commands on the guest through the operator's ssh client."""

    def __init__(self, target: SSHTarget, timeout: float = SSH_TIMEOUT) -> None:
        self.target = target
        self.timeout = timeout

    def output(self, command: str) -> str:
        argv = self.target.command(command)
        try:
            result = run(argv, check=False, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise PollTimeout(f"ssh command '{command}' did not finish within {self.timeout:g}s") from exc
        if result.returncode != 0:
            raise CommandFailed(argv, result.returncode, result.stderr or "")
        log("DEBUG", f"SSH returned: {result.stdout!r}")
        return result.stdout

    @contextmanager
    def stream(self, command: str) -> Iterator[IO[bytes]]:
        """Run ``command`` and yield its stdout as a binary pipe.

        The exit status is checked once the caller is done reading; a failed
        command raises CommandFailed even if reading the pipe raised first.
        """
        argv = self.target.command(command)
        log("DEBUG", f"Running: {' '.join(argv)}")
        try:
            proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except (FileNotFoundError, PermissionError) as exc:
            raise ToolUnavailable(argv[0], exc.strerror or str(exc)) from exc
        with proc:
            try:
                yield proc.stdout
            except Exception:
                self._finish(proc, argv, command)
                raise
            self._finish(proc, argv, command)

    def _finish(self, proc: subprocess.Popen, argv: List[str], command: str) -> None:
        proc.stdout.read()
        stderr = proc.stderr.read()
        try:
            returncode = proc.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            raise PollTimeout(f"ssh command '{command}' did not finish within {self.timeout:g}s") from exc
        if returncode != 0:
            raise CommandFailed(argv, returncode, stderr.decode(errors="replace"))

    def interactive(self, args: Sequence[str] = ()) -> int:
        """Attach the local terminal to a remote shell or command."""
        argv = self.target.command(*args)
        log("DEBUG", f"Running: {' '.join(argv)}")
        try:
            return subprocess.call(argv)
        except FileNotFoundError as exc:
            raise ToolUnavailable(argv[0], exc.strerror or str(exc)) from exc


def parse_ip(text: str) -> str:
    """Extract the IPv4 address from ``ip addr show`` output.

    >>> parse_ip("    inet 192.168.59.103/24 brd 192.168.59.255 scope global eth1")
    '192.168.59.103'
    """
    for line in text.splitlines():
        fields = line.strip().split()
        if len(fields) >= 2 and fields[0] == "inet":
            return fields[1].split("/", 1)[0]
    raise ParseError(f"No IP address found in: {text.strip()!r}", text=text)


def parse_socket(text: str, ip: Optional[str] = None) -> str:
    """Extract the daemon's tcp://host:port listen address, substituting ``ip`` for 0.0.0.0.

    The daemon may listen on several sockets; only the first tcp one is used.
    Flags are accepted in both ``-H tcp://...`` and ``-H=tcp://...`` form.
    """
    for token in re.split(r"[\x00\s]+", text):
        url = token.rpartition("=")[2]
        if not url.startswith("tcp://"):
            continue
        match = SOCKET_URL_RE.match(url)
        if not match or not 0 < int(match.group(2)) < 65536:
            raise ParseError(f"Docker socket {url!r} is not of the form tcp://host:port", text=text)
        host, port = match.groups()
        if host == SOCKET_WILDCARD_HOST:
            if not ip:
                raise ParseError(f"daemon listens on {url} but no guest address is known", text=text)
            host = ip
        return f"tcp://{host}:{port}"
    raise ParseError(f"Error requesting Docker socket: {text.strip()!r}", text=text)


def parse_tls(text: str) -> bool:
    """Return True if the daemon's argument list enables TLS."""
    for arg in re.split(r"[\x00\s]+", text):
        flag, _, value = arg.partition("=")
        if flag in TLS_FLAGS and value.lower() in ("", "true", "1"):
            return True
    return False


def request_ip(shell: GuestShell) -> str:
    return parse_ip(shell.output(IP_COMMAND))


def request_socket(shell: GuestShell, ip: Optional[str] = None) -> str:
    out = shell.output(SOCKET_COMMAND)
    if ip is None and "tcp://0.0.0.0" in out:
        ip = request_ip(shell)
    return parse_socket(out, ip)


def request_tls(shell: GuestShell) -> bool:
    return parse_tls(shell.output(DAEMON_ARGS_COMMAND))


def extract_certs(stream: IO[bytes], cert_dir: Path) -> List[Path]:
    """Unpack the files of a tar stream into ``cert_dir``, flattening their paths."""
    written: List[Path] = []
    with tarfile.open(fileobj=stream, mode="r|") as tar:
        for member in tar:
            if not member.isfile():
                continue
            source = tar.extractfile(member)
            if source is None:
                continue
            ensure_directory(cert_dir)
            target = cert_dir / Path(member.name).name
            log("INFO", f"Writing {target}")
            target.write_bytes(source.read())
            written.append(target)
    return written


def request_certs(shell: GuestShell, cert_root: Path, name: str) -> Optional[Path]:
    """Copy the guest's TLS material into ``cert_root/<name>``.

    Returns None when the guest has no certificates (the tar command fails).
    """
    cert_dir = cert_root / name
    try:
        with shell.stream(CERTS_COMMAND) as stdout:
            written = extract_certs(stdout, cert_dir)
    except CommandFailed as exc:
        log("DEBUG", f"No certificates fetched: {exc}")
        return None
    except tarfile.TarError as exc:
        raise ParseError(f"Certificate archive from guest is unreadable: {exc}") from exc
    return cert_dir if written else None


def _scan_lines(buffer: str) -> Tuple[str, str]:
    """Look for an inet line in the complete lines of ``buffer``; return (ip, remainder)."""
    while "\n" in buffer:
        line, buffer = buffer.split("\n", 1)
        match = SERIAL_INET_RE.match(line.rstrip("\r"))
        if match and match.group(1):
            return match.group(1), buffer
    return "", buffer


def request_ip_from_serial(path: str, timeout: float = SERIAL_TIMEOUT, interval: float = SERIAL_INTERVAL) -> str:
    """Log in on the serial console and ask the guest for its host-only address.

    Raises PollTimeout when no address shows up before the deadline.
    """
    deadline = time.time() + timeout
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(interval)
        sock.connect(path)
        sock.sendall(b"\r")
        sock.sendall(f"{GUEST_USER}\r".encode())
        buffer = ""
        transcript: List[str] = []
        while time.time() < deadline:
            sock.sendall(f"{IP_COMMAND}\r".encode())
            try:
                while time.time() < deadline:
                    chunk = sock.recv(1024)
                    if not chunk:
                        raise ManagerError(f"serial console {path} closed the connection")
                    text = chunk.decode(errors="replace")
                    transcript.append(text)
                    ip, buffer = _scan_lines(buffer + text)
                    if ip:
                        return ip
            except socket.timeout:
                continue
    log("DEBUG", f"Serial console transcript: {''.join(transcript)!r}")
    raise PollTimeout(f"no IP address reported on serial console {path} within {timeout:g}s")
