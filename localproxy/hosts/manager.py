"""Hosts file entries for proxied domains."""

import logging
from typing import Iterable, List, Optional

from ..shared.config import Config, get_config
from ..shared.privileged import read_text, write_text

logger = logging.getLogger(__name__)

MARKER = '# Added by localproxy'
LOOPBACK_ADDRESSES = ('127.0.0.1', '::1')


def _entry_hosts(line: str) -> List[str]:
    """Hostnames mapped to loopback on ``line``, or [] for other lines."""
    tokens = line.split('#', 1)[0].split()
    if len(tokens) < 2 or tokens[0] not in LOOPBACK_ADDRESSES:
        return []
    return [t.lower() for t in tokens[1:]]


def has_entry(content: str, domain: str) -> bool:
    domain = domain.lower()
    return any(domain in _entry_hosts(line) for line in content.splitlines())


def add_entries(content: str, domains: Iterable[str]) -> str:
    """``content`` with a marked block for every domain not already present."""
    missing = [d for d in domains if not has_entry(content, d)]
    if not missing:
        return content
    if content and not content.endswith('\n'):
        content += '\n'
    for domain in missing:
        content += f"\n{MARKER}\n127.0.0.1 {domain}\n::1 {domain}\n"
    return content


def remove_entries(content: str, domains: Iterable[str]) -> str:
    """``content`` without the marked entries for ``domains``.

    Only lines inside blocks started by the marker are touched; a marker
    whose block ends up empty is dropped too.
    """
    targets = {d.lower() for d in domains}
    lines = content.splitlines()
    result: List[str] = []
    changed = False
    i = 0

    while i < len(lines):
        line = lines[i]
        if line.strip() != MARKER:
            result.append(line)
            i += 1
            continue

        block = []
        i += 1
        while i < len(lines) and _entry_hosts(lines[i]):
            block.append(lines[i])
            i += 1
        kept = [entry for entry in block if not targets.intersection(_entry_hosts(entry))]
        changed = changed or len(kept) != len(block)
        if kept:
            result.append(line)
            result.extend(kept)
        elif result and not result[-1].strip():
            # Drop the blank separator written before the block
            result.pop()

    if not changed:
        return content
    while result and not result[-1].strip():
        result.pop()
    return '\n'.join(result) + '\n' if result else ''


class HostsManager:
    """Adds and removes loopback entries in the system hosts file.

    Every method is best-effort: failures are logged with manual instructions
    and reported as False instead of raising.
    """

    def __init__(self, hosts_file: Optional[str] = None, config: Optional[Config] = None):
        config = config or get_config()
        self.hosts_file = hosts_file or config.HOSTS_FILE

    def _manual_instructions(self, domains: List[str], action: str):
        logger.warning(f"Could not modify {self.hosts_file} automatically")
        logger.info(f"Please {action} these entries manually:")
        for domain in domains:
            logger.info(f"  127.0.0.1 {domain}")
            logger.info(f"  ::1 {domain}")

    async def add_hosts(self, domains: Iterable[str]) -> bool:
        domains = list(domains)
        if not domains:
            return True
        try:
            content = await read_text(self.hosts_file)
        except OSError as e:
            logger.error(f"Cannot read hosts file {self.hosts_file}: {e}")
            self._manual_instructions(domains, "add")
            return False

        updated = add_entries(content, domains)
        if updated == content:
            logger.debug(f"Hosts entries already present for {domains}")
            return True

        try:
            await write_text(self.hosts_file, updated)
        except OSError as e:
            logger.error(f"Failed to update hosts file: {e}")
            self._manual_instructions(domains, "add")
            return False

        logger.info(f"Added hosts entries for {', '.join(domains)}")
        return True

    async def remove_hosts(self, domains: Iterable[str]) -> bool:
        domains = list(domains)
        if not domains:
            return True
        try:
            content = await read_text(self.hosts_file)
        except OSError as e:
            logger.error(f"Cannot read hosts file {self.hosts_file}: {e}")
            return False

        updated = remove_entries(content, domains)
        if updated == content:
            logger.debug("No matching hosts entries to remove")
            return True

        try:
            await write_text(self.hosts_file, updated)
        except OSError as e:
            logger.error(f"Failed to update hosts file: {e}")
            self._manual_instructions(domains, "remove")
            return False

        logger.info(f"Removed hosts entries for {', '.join(domains)}")
        return True

    async def check_hosts(self, domains: Iterable[str]) -> List[bool]:
        domains = list(domains)
        try:
            content = await read_text(self.hosts_file)
        except OSError as e:
            logger.error(f"Cannot read hosts file {self.hosts_file}: {e}")
            return [False] * len(domains)
        return [has_entry(content, d) for d in domains]
