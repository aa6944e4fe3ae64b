"""
Base classes and helpers for discovery methods.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from .._types import Device, NetworkInfo
from ..cancellation import CancelToken

logger = logging.getLogger(__name__)

# (returncode, stdout, stderr)
CommandResult = tuple[int, str, str]
CommandRunner = Callable[..., Awaitable[CommandResult]]


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


async def run_command(*cmd: str, timeout: float = 5.0) -> CommandResult:
    """
    Run a command and capture its output.

    The child is killed if the timeout expires or the caller is cancelled.

    Raises:
        FileNotFoundError: If the executable does not exist
        asyncio.TimeoutError: If the command outlives the timeout
    """
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except BaseException:
        _kill(proc)
        with contextlib.suppress(Exception):
            await proc.wait()
        raise
    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


class DiscoveryMethod(ABC):
    """Base class for discovery methods."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this discovery method."""
        pass

    @abstractmethod
    async def discover(
        self,
        network: NetworkInfo,
        token: Optional[CancelToken] = None,
    ) -> list[Device]:
        """
        Discover devices on the given network.

        Returns list of discovered devices.
        """
        pass

    async def is_available(self) -> bool:
        """Check if this discovery method is available."""
        return True
