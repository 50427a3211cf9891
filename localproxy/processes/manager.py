"""Supervision of dev server processes started alongside a proxy."""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from ..shared.config import Config, get_config

logger = logging.getLogger(__name__)

# How long a process must survive before start() reports success
STARTUP_GRACE = 1.0


@dataclass
class ManagedProcess:
    id: str
    command: str
    cwd: str
    process: asyncio.subprocess.Process
    env: Dict[str, str] = field(default_factory=dict)
    watcher: Optional[asyncio.Task] = None


class ProcessSupervisor:
    """Starts shell commands and stops them (and their children) on request."""

    def __init__(self, stop_timeout: Optional[float] = None,
                 on_unexpected_exit: Optional[Callable[[str, int], None]] = None,
                 config: Optional[Config] = None):
        config = config or get_config()
        self.stop_timeout = stop_timeout if stop_timeout is not None else config.PROCESS_STOP_TIMEOUT
        self.on_unexpected_exit = on_unexpected_exit
        self.processes: Dict[str, ManagedProcess] = {}
        self._shutting_down = False

    def is_running(self, id: str) -> bool:
        managed = self.processes.get(id)
        return managed is not None and managed.process.returncode is None

    async def start(self, id: str, command: str, cwd: Optional[str] = None,
                    env: Optional[Mapping[str, str]] = None) -> bool:
        """Launch ``command`` through the shell.

        Returns:
            False if the process could not be spawned or exited non-zero
            within the startup grace period
        """
        if id in self.processes:
            logger.debug(f"Process {id} is already running")
            return True

        cwd = cwd or os.getcwd()
        env = dict(env or {})
        logger.debug(f"Starting process {id}: {command} (cwd={cwd}, env={env})")

        kwargs = {}
        if sys.platform != 'win32':
            # Own process group so stop() reaches the shell's children too
            kwargs['start_new_session'] = True
        try:
            process = await asyncio.create_subprocess_shell(
                command, cwd=cwd, env={**os.environ, **env}, **kwargs
            )
        except OSError as e:
            logger.error(f"Process {id} failed to start: {e}")
            return False

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=STARTUP_GRACE)
        except asyncio.TimeoutError:
            returncode = None

        if returncode is not None and returncode != 0:
            logger.error(f"Process {id} exited with code {returncode}")
            return False

        managed = ManagedProcess(id=id, command=command, cwd=cwd, process=process, env=env)
        self.processes[id] = managed
        if returncode is None:
            managed.watcher = asyncio.create_task(self._watch(managed))
        logger.info(f"Started process {id} (pid {process.pid})")
        return True

    async def _watch(self, managed: ManagedProcess):
        returncode = await managed.process.wait()
        if self._shutting_down or self.processes.get(managed.id) is not managed:
            return
        self.processes.pop(managed.id, None)
        if returncode != 0:
            logger.error(f"Process {managed.id} exited with code {returncode}")
            if self.on_unexpected_exit is not None:
                self.on_unexpected_exit(managed.id, returncode)
        else:
            logger.info(f"Process {managed.id} exited")

    def _signal(self, process: asyncio.subprocess.Process, sig: int):
        try:
            if sys.platform != 'win32':
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            pass

    async def stop(self, id: str) -> bool:
        """SIGTERM the process group, escalating to SIGKILL after the timeout."""
        managed = self.processes.pop(id, None)
        if managed is None:
            logger.debug(f"No process found for {id}")
            return False

        if managed.watcher is not None:
            managed.watcher.cancel()

        process = managed.process
        if process.returncode is None:
            logger.debug(f"Stopping process {id}")
            self._signal(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.debug(f"Force killing process {id}")
                self._signal(process, getattr(signal, 'SIGKILL', signal.SIGTERM))
                await process.wait()

        logger.info(f"Process {id} stopped")
        return True

    async def stop_all(self) -> bool:
        if self._shutting_down:
            logger.debug("Already shutting down, skipping duplicate stop_all call")
            return True

        self._shutting_down = True
        try:
            ids = list(self.processes)
            results = await asyncio.gather(*(self.stop(i) for i in ids), return_exceptions=True)
            ok = True
            for id, result in zip(ids, results):
                if isinstance(result, BaseException):
                    logger.error(f"Failed to stop process {id}: {result}")
                    ok = False
            self.processes.clear()
            return ok
        finally:
            self._shutting_down = False
