"""Orchestrator for unattended multi-drive flashing.

This module provides the Hub, which:
- Fetches the source image once
- Polls the attached drives and filters the candidates
- Runs one Session per qualifying drive until it is released
- Reports every per-drive error through one ErrorSink

Everything runs on a single event loop. Callbacks never run concurrently,
which is what makes the `processes` registry a sufficient guard against
flashing the same drive twice.
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable

from multiwrite.config import Settings
from multiwrite.errors import (
    EnumerationError,
    ErrorSink,
    MultiwriteError,
    UnmountError,
    WriteEngineError,
)
from multiwrite.flash.device import Drive, list_drives, unmount_disk
from multiwrite.flash.partitions import is_provisioned
from multiwrite.flash.writer import ImageWriter
from multiwrite.hub.session import Session
from multiwrite.image.fetch import ensure_image
from multiwrite.progress.meter import Meter
from multiwrite.progress.terminal import ConsoleStream
from multiwrite.types import ImageSource, SessionState

logger = logging.getLogger(__name__)

GAUGE_TEMPLATE = "[:bar] :message"
GAUGE_WIDTH = 20

CHECKSUM_ALGORITHMS = ("crc32",)

# Matched against the drive description; Mac disks are never flashed
_MAC_PATTERN = re.compile("mac", re.IGNORECASE)

DriveLister = Callable[[], Awaitable[list[Drive]]]
Unmounter = Callable[[str], Awaitable[None]]
ProvisionCheck = Callable[[str], bool]
WriterFactory = Callable[..., ImageWriter]


def qualifies(drive: Drive, blacklist: Iterable[str] = ()) -> bool:
    """Check a drive against the discovery filter.

    A drive qualifies when it is not blacklisted, not a system drive, not
    write-protected and not described as a Mac disk.
    """
    return (
        drive.device not in blacklist
        and drive.system is False
        and drive.protected is False
        and not _MAC_PATTERN.search(drive.description)
    )


class Hub:
    """Coordinates discovery and flashing for the whole process.

    Args:
        settings: Application settings.
        meter: Progress renderer; one bound to stdout is created if omitted.
        errors: Error channel; a logging-only one is created if omitted.
        list_drives: Drive enumeration coroutine.
        unmount: Coroutine unmounting every filesystem of a device.
        is_provisioned: Blocking check run in a worker thread.
        writer_factory: Builds the writer for a session.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        meter: Meter | None = None,
        errors: ErrorSink | None = None,
        list_drives: DriveLister = list_drives,
        unmount: Unmounter = unmount_disk,
        is_provisioned: ProvisionCheck = is_provisioned,
        writer_factory: WriterFactory = ImageWriter,
    ) -> None:
        self.settings = settings
        self.meter = meter or Meter(ConsoleStream(), interval=settings.render_interval)
        self.errors = errors or ErrorSink()

        self._list_drives = list_drives
        self._unmount = unmount
        self._is_provisioned = is_provisioned
        self._writer_factory = writer_factory

        self.processes: dict[str, Session] = {}
        self.blacklist = settings.blacklist
        self.running = True
        self.image: ImageSource | None = None

        self._tasks: set[asyncio.Task[None]] = set()

    async def fetch(self) -> ImageSource:
        """Download the image unless it is already cached.

        Raises:
            FetchError: The image could not be downloaded.
        """
        if self.image is not None:
            return self.image

        url = self.settings.image_url
        if not url:
            raise ValueError("image_url is not configured")

        self.image = await ensure_image(
            url,
            self.settings.image_data_dir,
            timeout=self.settings.download_timeout,
        )
        logger.info(
            "Flashing %s (%d bytes)", self.image.path.name, self.image.original
        )
        return self.image

    async def run(self) -> None:
        """Fetch the image, then discover and flash drives until stopped.

        Returns once stop() was called and every in-flight session has
        completed.
        """
        await self.fetch()
        self.meter.start()
        try:
            await self.scan()
            await self.drain()
        finally:
            await self.meter.stop()

    def stop(self) -> None:
        """Stop discovery after the current poll."""
        logger.debug("Stopping discovery")
        self.running = False

    async def drain(self) -> None:
        """Wait for all in-flight sessions to finish."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def scan(self) -> None:
        """Poll drives and dispatch candidates while running."""
        while self.running:
            await self.poll()
            await asyncio.sleep(self.settings.poll_interval)

    async def poll(self) -> None:
        """Run one enumeration, filter and dispatch round."""
        try:
            drives = await self._list_drives()
        except EnumerationError as error:
            self.errors.emit(error)
            return

        candidates = self.filter_drives(drives)
        logger.debug("Candidate drives: %s", [drive.device for drive in candidates])
        await self.update(candidates)

    def filter_drives(self, drives: Iterable[Drive]) -> list[Drive]:
        return [drive for drive in drives if qualifies(drive, self.blacklist)]

    async def update(self, drives: Iterable[Drive]) -> None:
        """Dispatch every drive that is blank and freshly mounted."""
        for drive in drives:
            if await asyncio.to_thread(self._is_provisioned, drive.device):
                logger.debug("Skipping provisioned drive %s", drive.device)
                continue
            if not drive.mountpoints:
                logger.debug("Skipping unmounted drive %s", drive.device)
                continue
            self.flash(drive)
            await asyncio.sleep(0)

    def flash(self, drive: Drive) -> Session | None:
        """Start a session for a drive unless one is already registered.

        Returns:
            The new Session, or None if the drive was already being handled.
        """
        if drive.device in self.processes:
            logger.debug("Already handling %s", drive.device)
            return None
        if self.image is None:
            raise RuntimeError("flash() called before the image was fetched")

        gauge = self.meter.create_gauge(
            GAUGE_TEMPLATE,
            complete="=",
            incomplete=" ",
            width=GAUGE_WIDTH,
            total=self.image.final.value * 2,
        )
        session = Session(drive, gauge)
        self.processes[drive.device] = session

        task = asyncio.get_running_loop().create_task(
            self._run_session(session, self.image), name=f"flash:{drive.device}"
        )
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._session_done(t, session))
        return session

    async def _run_session(self, session: Session, image: ImageSource) -> None:
        drive = session.drive

        session.transition(SessionState.UNMOUNTING)
        try:
            await self._unmount(drive.device)
        except UnmountError as error:
            self._fail(session, error)
            return

        session.writer = self._writer_factory(
            image,
            drive.raw,
            verify=True,
            checksum_algorithms=CHECKSUM_ALGORITHMS,
            block_size=self.settings.block_size,
        )
        session.transition(SessionState.WRITING)

        # Start writing on the next loop iteration
        await asyncio.sleep(0)
        try:
            await session.writer.write(session.on_progress)
        except WriteEngineError as error:
            self._fail(session, error)
            return

        session.finish()

        try:
            await self._unmount(drive.device)
        except UnmountError as error:
            self._report(error, drive.device)
        else:
            session.mark_unmounted()

        asyncio.get_running_loop().call_later(
            self.settings.unmount_hold, self._release, session
        )

    def _report(self, error: MultiwriteError, device: str) -> None:
        error.device = device
        self.errors.emit(error)

    def _fail(self, session: Session, error: MultiwriteError) -> None:
        """Tear a session down after an error, freeing its drive now."""
        self._report(error, session.device)
        session.fail(error)
        asyncio.get_running_loop().call_later(self.settings.error_hold, session.remove)
        self._forget(session)

    def _forget(self, session: Session) -> None:
        if self.processes.get(session.device) is session:
            del self.processes[session.device]

    def _release(self, session: Session) -> None:
        """Free the drive of a completed session and drop its gauge."""
        logger.debug("Releasing %s", session.device)
        self._forget(session)
        session.remove()

    def _session_done(self, task: asyncio.Task[None], session: Session) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self._forget(session)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Unexpected error flashing %s",
                session.device,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            if isinstance(exc, MultiwriteError):
                self._fail(session, exc)
            else:
                self._fail(
                    session,
                    WriteEngineError(str(exc) or type(exc).__name__, error_code="UNEXPECTED"),
                )


__all__ = ["GAUGE_TEMPLATE", "Hub", "qualifies"]
