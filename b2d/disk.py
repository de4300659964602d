"""Persistent disk image construction for b2d.

A fresh disk carries a small tar archive at offset zero. The guest's first-boot
script looks for the magic marker at the start of the volume, formats the disk
when it finds it and unpacks the rest of the archive (the operator's SSH key)
into the docker user's home.
"""

from __future__ import annotations

import io
import shutil
import tarfile
import time
from pathlib import Path
from typing import BinaryIO, Optional

from b2d.constants import AUTHORIZED_KEYS_PATHS, MAGIC_MARKER
from b2d.exceptions import DiskImageError
from b2d.utils import ensure_directory, log
from b2d.vbm import VBoxManage

_ZERO_CHUNK = bytes(1 << 20)


def _add_file(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = int(time.time())
    tar.addfile(info, io.BytesIO(data))


def make_payload(pubkey: bytes) -> bytes:
    """Build the first-boot archive: marker first, then the key in both legacy locations."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tar:
        _add_file(tar, MAGIC_MARKER, MAGIC_MARKER.encode())
        ssh_dir = tarfile.TarInfo(".ssh")
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = 0o700
        ssh_dir.mtime = int(time.time())
        tar.addfile(ssh_dir)
        for path in AUTHORIZED_KEYS_PATHS:
            _add_file(tar, path, pubkey)
    return buf.getvalue()


def zero_fill(stream: BinaryIO, n: int) -> int:
    """Write exactly ``n`` zero bytes to ``stream`` and return the count."""
    if n < 0:
        raise ValueError(f"cannot write a negative number of bytes ({n})")
    written = 0
    view = memoryview(_ZERO_CHUNK)
    while written < n:
        chunk = min(len(_ZERO_CHUNK), n - written)
        stream.write(view[:chunk])
        written += chunk
    return written


def make_disk_image(vbm: VBoxManage, dest: Path, size_mb: int, payload: bytes) -> None:
    """Convert ``payload`` padded with zeros to exactly ``size_mb`` MiB into a VMDK at ``dest``.

    The converter is told the total size up front and fails on some hosts
    when it receives fewer bytes, so the stream is always padded to the end.
    """
    size = size_mb << 20
    if len(payload) > size:
        raise DiskImageError(f"payload of {len(payload)} bytes does not fit in a {size_mb} MB disk")
    ensure_directory(dest.parent)
    log("INFO", f"Creating {size_mb} MB hard disk image...")

    proc = vbm.popen("convertfromraw", "stdin", str(dest), str(size), "--format", "VMDK")
    assert proc.stdin is not None
    write_error: Optional[OSError] = None
    try:
        proc.stdin.write(payload)
        zero_fill(proc.stdin, size - len(payload))
    except OSError as exc:
        write_error = exc
    _, stderr = proc.communicate()
    if proc.returncode != 0 or write_error is not None:
        dest.unlink(missing_ok=True)
        detail = (stderr or b"").decode(errors="replace").strip() or str(write_error)
        raise DiskImageError(f"Failed to create disk image {dest}: {detail}")
    log("SUCCESS", f"Disk image created at {dest}")


def copy_disk_image(dest: Path, base: Path) -> None:
    """Copy a base VMDK to ``dest``, replacing whatever is there."""
    if dest.resolve() == base.resolve():
        return
    if not base.exists():
        raise DiskImageError(f"Base disk image not found: {base}")
    ensure_directory(dest.parent)
    dest.unlink(missing_ok=True)
    try:
        shutil.copyfile(base, dest)
    except OSError as exc:
        dest.unlink(missing_ok=True)
        raise DiskImageError(f"Failed to copy disk image {base} to {dest}: {exc}") from exc


def build_disk(vbm: VBoxManage, dest: Path, size_mb: int, ssh_key: Path, base: Optional[Path] = None) -> bool:
    """Create the persistent disk unless one already exists. Returns True when a disk was built."""
    if dest.exists():
        log("INFO", f"Keeping existing disk image {dest}")
        return False
    if base is not None:
        log("INFO", f"Using {base} as base VMDK")
        copy_disk_image(dest, base)
        return True
    pubkey_path = ssh_key.with_name(ssh_key.name + ".pub")
    try:
        pubkey = pubkey_path.read_bytes()
    except OSError as exc:
        raise DiskImageError(f"Cannot read SSH public key {pubkey_path}: {exc}") from exc
    make_disk_image(vbm, dest, size_mb, make_payload(pubkey))
    return True
