"""macOS per-TLD resolver registration.

macOS consults ``/etc/resolver/<tld>`` before the system resolver, which lets
a whole TLD be pointed at the local responder without touching global DNS
settings. Other platforms rely on hosts-file entries instead.
"""

import logging
import os
import sys
from typing import Iterable, List, Optional

from ..shared.config import Config, get_config
from ..shared.privileged import make_dirs, remove_file, write_text

logger = logging.getLogger(__name__)


class PlatformResolver:
    """Writes and removes resolver files pointing TLDs at the DNS responder."""

    def __init__(self, resolver_dir: Optional[str] = None, platform: Optional[str] = None,
                 config: Optional[Config] = None):
        config = config or get_config()
        self.resolver_dir = resolver_dir or config.RESOLVER_DIR
        self.platform = platform or sys.platform
        self._written: List[str] = []

    @property
    def supported(self) -> bool:
        return self.platform == 'darwin'

    @property
    def registered_files(self) -> List[str]:
        return list(self._written)

    def resolver_content(self, host: str, port: int) -> str:
        return f"nameserver {host}\nport {port}\n"

    async def setup(self, tlds: Iterable[str], port: int, host: str = '127.0.0.1') -> bool:
        """Point each TLD in ``tlds`` at ``host:port``.

        Returns:
            True if every file was written, or if the platform needs none
        """
        if not self.supported:
            logger.debug("Resolver registration only needed on macOS")
            return True

        try:
            await make_dirs(self.resolver_dir)
        except OSError as e:
            logger.warning(f"Cannot create {self.resolver_dir}: {e}")
            return False

        ok = True
        for tld in sorted({t.lower().lstrip('.') for t in tlds if t}):
            path = os.path.join(self.resolver_dir, tld)
            try:
                await write_text(path, self.resolver_content(host, port))
            except OSError as e:
                logger.warning(f"Failed to create resolver file {path}: {e}")
                ok = False
                continue
            if path not in self._written:
                self._written.append(path)
            logger.debug(f"Created {path} for .{tld}")
        return ok

    async def remove(self) -> bool:
        """Delete every resolver file this instance wrote."""
        ok = True
        while self._written:
            path = self._written.pop()
            try:
                await remove_file(path)
                logger.debug(f"Removed {path}")
            except OSError as e:
                logger.warning(f"Failed to remove resolver file {path}: {e}")
                ok = False
        return ok
