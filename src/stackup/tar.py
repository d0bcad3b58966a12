"""Tar streams for uploading local path trees."""

from __future__ import annotations

import fnmatch
import os
import shlex
import string
import tarfile
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterable, Mapping

# Archives larger than this spill from memory to a temporary file
SPOOL_MAX_SIZE = 16 * 1024 * 1024


def resolve_local_path(cwd: str | Path, path: str, env: Mapping[str, str]) -> Path:
    """Expand ``$VAR``/``${VAR}`` and ``~`` in ``path`` and check that it exists.

    Variables from ``env`` take precedence over the process environment.
    Relative results are kept relative to ``cwd`` so archive member names
    mirror what the user wrote.
    """
    mapping = {**os.environ, **env}
    expanded = string.Template(path).safe_substitute(mapping)
    resolved = Path(expanded).expanduser()

    full = resolved if resolved.is_absolute() else Path(cwd) / resolved
    if not full.exists():
        raise FileNotFoundError(f"{full} does not exist")
    return resolved


def _is_excluded(name: str, patterns: Iterable[str]) -> bool:
    base = os.path.basename(name.rstrip("/"))
    for pattern in patterns:
        pattern = pattern.rstrip("/")
        if fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(base, pattern):
            return True
        # tar --exclude also matches any trailing run of path components
        if fnmatch.fnmatch(name, f"*/{pattern}"):
            return True
    return False


def new_tar_stream(cwd: str | Path, path: str | Path, exclude: Iterable[str] = ()) -> BinaryIO:
    """Build a gzip tar archive of ``path`` (relative to ``cwd``).

    The archive is written to a spooled temporary file and returned rewound,
    so it can be streamed to every batch of hosts in turn.
    """
    patterns = tuple(exclude)
    cwd = Path(cwd)
    path = Path(path)
    full = path if path.is_absolute() else cwd / path

    if path.is_absolute():
        try:
            arcname = str(path.relative_to(cwd))
        except ValueError:
            arcname = str(path).lstrip("/")
    else:
        arcname = os.path.normpath(str(path))

    def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        if info.name not in (".", arcname) and _is_excluded(info.name, patterns):
            return None
        return info

    stream = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
    try:
        with tarfile.open(fileobj=stream, mode="w:gz") as archive:
            archive.add(str(full), arcname=arcname, recursive=True, filter=_filter)
    except BaseException:
        stream.close()
        raise
    stream.seek(0)
    return stream  # type: ignore[return-value]


def remote_tar_command(dst: str) -> str:
    """Shell command that extracts an incoming archive into ``dst``."""
    return f"tar -C {shlex.quote(dst)} -xzf -"
