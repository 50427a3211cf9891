"""File operations on system paths, retried through sudo when needed.

Direct writes are tried first in a worker thread. On ``PermissionError``
the operation is replayed through ``sudo``: non-interactively (``-n``) by
default, or with ``-S`` when ``SUDO_PASSWORD`` is set.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


class SudoError(OSError):
    """A sudo-wrapped command exited non-zero."""


def _sudo_command(args: List[str]) -> Tuple[List[str], Optional[bytes]]:
    password = os.getenv('SUDO_PASSWORD')
    if password:
        return ['sudo', '-S', *args], (password + '\n').encode()
    return ['sudo', '-n', *args], None


async def run_sudo(args: List[str], input_data: bytes = b'') -> bytes:
    """Run ``args`` under sudo and return stdout.

    Raises:
        SudoError: If sudo is unavailable or the command fails
    """
    command, prefix = _sudo_command(args)
    logger.debug(f"Running privileged command: {' '.join(args)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise SudoError(f"sudo is not available: {e}") from e

    stdout, stderr = await proc.communicate((prefix or b'') + input_data)
    if proc.returncode != 0:
        raise SudoError(f"{' '.join(args)} failed ({proc.returncode}): {stderr.decode(errors='replace').strip()}")
    return stdout


async def read_text(path: str) -> str:
    try:
        return await asyncio.to_thread(Path(path).read_text, encoding='utf-8')
    except PermissionError:
        logger.debug(f"Permission denied reading {path}, retrying with sudo")
        return (await run_sudo(['cat', path])).decode('utf-8')


async def write_text(path: str, content: str) -> None:
    """Replace ``path`` with ``content``."""
    try:
        await asyncio.to_thread(Path(path).write_text, content, encoding='utf-8')
    except PermissionError:
        logger.debug(f"Permission denied writing {path}, retrying with sudo")
        await run_sudo(['tee', path], content.encode('utf-8'))


async def remove_file(path: str) -> None:
    """Delete ``path``; a missing file is not an error."""
    try:
        await asyncio.to_thread(Path(path).unlink, missing_ok=True)
    except PermissionError:
        logger.debug(f"Permission denied removing {path}, retrying with sudo")
        await run_sudo(['rm', '-f', path])


async def make_dirs(path: str) -> None:
    try:
        await asyncio.to_thread(os.makedirs, path, exist_ok=True)
    except PermissionError:
        await run_sudo(['mkdir', '-p', path])
