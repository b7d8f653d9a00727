"""Process-wide image rebuild serialization."""

import asyncio
import logging

from .errors import ContainerRuntimeError
from .proxy import run_command

logger = logging.getLogger(__name__)

GIT_PULL_TIMEOUT = 30.0


class RebuildSlot:
    """Mutual exclusion for the shared image rebuild.

    Waiters acquire the slot in arrival (FIFO) order. Scoped to this process;
    it does not survive a restart.
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    @property
    def in_use(self) -> bool:
        return self._lock.locked()

    async def acquire(self) -> None:
        await self._lock.acquire()

    def release(self) -> None:
        self._lock.release()

    async def __aenter__(self) -> "RebuildSlot":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class ImageRebuilder:
    """Pulls the image source and rebuilds the shared instance image.

    Callers that queue up behind an in-flight rebuild reuse its result instead
    of starting a duplicate build.
    """

    def __init__(self, runtime, source_dir: str, tag: str, slot: RebuildSlot | None = None):
        self.runtime = runtime
        self.source_dir = source_dir
        self.tag = tag
        self.slot = slot or RebuildSlot()
        self._generation = 0

    async def _pull_source(self) -> None:
        try:
            code, output = await run_command(
                ("git", "-C", self.source_dir, "pull", "--ff-only"), GIT_PULL_TIMEOUT
            )
        except (OSError, TimeoutError) as e:
            raise ContainerRuntimeError(f"git pull failed: {e!r}") from e
        if code != 0:
            raise ContainerRuntimeError(f"git pull failed: {output}")

    async def rebuild(self) -> bool:
        """Rebuild the image once per burst of concurrent callers.

        Returns:
            True if this call performed the build, False if it waited on another
        """
        seen = self._generation
        waited = self.slot.in_use
        async with self.slot:
            if waited and self._generation != seen:
                logger.info("Image rebuilt by a concurrent caller, skipping")
                return False

            logger.info(f"Rebuilding image {self.tag} from {self.source_dir}")
            await self._pull_source()
            await self.runtime.build_image(self.source_dir, self.tag)
            self._generation += 1
            return True
