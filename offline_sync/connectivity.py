"""
Offline Sync Engine - Connectivity Monitor

Tracks two signals: the platform's online/offline flag and whether the API
actually answers. A network interface coming up is not enough to start a
sync pass; an active probe must succeed within ``timeout`` seconds, and a
probe that times out counts as "not connected".
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .errors import SyncError
from .models import Clock, utcnow

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    """Platform online flag plus an active, time-bounded reachability probe."""

    def __init__(
        self,
        probe: Probe,
        timeout: float = 5.0,
        initially_online: bool = True,
        clock: Clock = utcnow,
    ):
        self.probe = probe
        self.timeout = timeout
        self.clock = clock
        self.is_online = initially_online
        self.is_reachable = False
        self.last_online: Optional[datetime] = clock() if initially_online else None

    async def check(self) -> bool:
        """Probe the API and update ``is_reachable``."""
        if not self.is_online:
            self.is_reachable = False
            return False

        try:
            reachable = bool(await asyncio.wait_for(self.probe(), self.timeout))
        except asyncio.TimeoutError:
            logger.warning(f"Connectivity probe timed out after {self.timeout}s")
            reachable = False
        except SyncError as e:
            logger.warning(f"Connectivity probe failed: {e}")
            reachable = False

        self.is_reachable = reachable
        logger.info(f"Connection state: online={self.is_online}, reachable={self.is_reachable}")
        return reachable

    def mark_online(self) -> None:
        """Record the platform's online event."""
        self.is_online = True
        self.last_online = self.clock()

    def mark_offline(self) -> None:
        """Record the platform's offline event."""
        self.is_online = False
        self.is_reachable = False
