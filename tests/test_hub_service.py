"""Tests for the Hub: discovery, dispatch and session teardown.

Drive enumeration, unmounting, the provisioned check and the writer are
replaced with fakes so no real device is touched.
"""

import asyncio
import json
from io import StringIO
from unittest.mock import AsyncMock, Mock, patch

import pytest
from rich.console import Console

from multiwrite.config import Settings
from multiwrite.errors import (
    EnumerationError,
    ErrorSink,
    UnmountError,
    WriteEngineError,
)
from multiwrite.flash.device import Drive, list_drives
from multiwrite.hub import Hub, qualifies
from multiwrite.progress import ConsoleStream, Meter
from multiwrite.types import (
    ImageSource,
    ProgressState,
    ProgressType,
    SessionState,
    SizeEstimate,
)

IMAGE_SIZE = 100


def make_drive(device: str = "/dev/sdb", **overrides) -> Drive:
    fields = {
        "device": device,
        "raw": device,
        "description": "SanDisk Cruzer",
        "size": 8 * 1024**3,
        "system": False,
        "protected": False,
        "mountpoints": ["/media/usb"],
    }
    fields.update(overrides)
    return Drive(**fields)


def event(kind: ProgressType, delta: int) -> ProgressState:
    return ProgressState(type=kind, delta=delta, speed=1.0, eta=0, percentage=50.0)


class FakeWriter:
    """Writer that reports a full write and verify pass without any I/O."""

    instances: list["FakeWriter"] = []

    def __init__(self, image, path, **options):
        self.image = image
        self.path = path
        self.options = options
        self.release = asyncio.Event()
        self.release.set()
        FakeWriter.instances.append(self)

    async def write(self, on_progress):
        await self.release.wait()
        half = self.image.final.value // 2
        on_progress(event(ProgressType.WRITE, half))
        on_progress(event(ProgressType.WRITE, half))
        on_progress(event(ProgressType.VERIFY, half))
        on_progress(event(ProgressType.VERIFY, half))


@pytest.fixture(autouse=True)
def reset_writers():
    FakeWriter.instances = []
    yield
    FakeWriter.instances = []


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        image_url="https://example.com/station.img",
        image_data_dir=tmp_path,
        poll_interval=0,
        error_hold=0.05,
        unmount_hold=0.05,
    )


@pytest.fixture
def image(tmp_path):
    return ImageSource(
        path=tmp_path / "station.img",
        original=IMAGE_SIZE,
        final=SizeEstimate(IMAGE_SIZE),
    )


@pytest.fixture
def errors():
    sink = ErrorSink()
    sink.reported = []
    sink.subscribe(sink.reported.append)
    return sink


def make_hub(settings, image, errors, **overrides) -> Hub:
    options = {
        "meter": Meter(ConsoleStream(Console(file=StringIO())), interval=0.01),
        "errors": errors,
        "list_drives": AsyncMock(return_value=[]),
        "unmount": AsyncMock(return_value=None),
        "is_provisioned": Mock(return_value=False),
        "writer_factory": FakeWriter,
    }
    options.update(overrides)
    hub = Hub(settings, **options)
    hub.image = image
    return hub


class TestQualifies:
    """Tests for the discovery filter."""

    def test_plain_removable_drive(self):
        assert qualifies(make_drive()) is True

    def test_system_drive(self):
        assert qualifies(make_drive(system=True)) is False

    def test_protected_drive(self):
        assert qualifies(make_drive(protected=True)) is False

    def test_blacklisted_drive(self):
        assert qualifies(make_drive("/dev/sdc"), {"/dev/sdc"}) is False
        assert qualifies(make_drive("/dev/sdb"), {"/dev/sdc"}) is True

    @pytest.mark.parametrize("description", ["Mac OS Disk", "MACINTOSH HD", "imac"])
    def test_mac_drive(self, description):
        assert qualifies(make_drive(description=description)) is False


class TestFetch:
    """Tests for Hub.fetch."""

    @pytest.mark.asyncio
    async def test_fetches_once(self, settings, image, errors):
        hub = make_hub(settings, image, errors)
        hub.image = None

        with patch(
            "multiwrite.hub.service.ensure_image", AsyncMock(return_value=image)
        ) as mock_ensure:
            assert await hub.fetch() is image
            assert await hub.fetch() is image

        mock_ensure.assert_awaited_once_with(
            settings.image_url,
            settings.image_data_dir,
            timeout=settings.download_timeout,
        )

    @pytest.mark.asyncio
    async def test_requires_url(self, settings, image, errors):
        hub = make_hub(settings.model_copy(update={"image_url": None}), image, errors)
        hub.image = None

        with pytest.raises(ValueError):
            await hub.fetch()


class TestDiscovery:
    """Tests for polling, filtering and dispatch."""

    @pytest.mark.asyncio
    async def test_filtered_drives_are_never_inspected(self, settings, image, errors):
        drives = [
            make_drive("/dev/sda", system=True),
            make_drive("/dev/sdc", protected=True),
            make_drive("/dev/sdd", description="Mac OS Disk"),
            make_drive("/dev/sdb"),
        ]
        is_provisioned = Mock(return_value=False)
        hub = make_hub(
            settings,
            image,
            errors,
            list_drives=AsyncMock(return_value=drives),
            is_provisioned=is_provisioned,
        )

        await hub.poll()
        await hub.drain()

        is_provisioned.assert_called_once_with("/dev/sdb")
        assert [w.path for w in FakeWriter.instances] == ["/dev/sdb"]

    @pytest.mark.asyncio
    async def test_blacklisted_drive_is_skipped(self, settings, image, errors):
        settings = settings.model_copy(update={"drive_blacklist": "/dev/sdb, /dev/sdx"})
        hub = make_hub(
            settings,
            image,
            errors,
            list_drives=AsyncMock(return_value=[make_drive("/dev/sdb")]),
        )

        await hub.poll()

        assert hub.processes == {}
        assert FakeWriter.instances == []

    @pytest.mark.asyncio
    async def test_provisioned_drive_is_skipped(self, settings, image, errors):
        hub = make_hub(
            settings,
            image,
            errors,
            list_drives=AsyncMock(return_value=[make_drive()]),
            is_provisioned=Mock(return_value=True),
        )

        await hub.poll()

        assert hub.processes == {}

    @pytest.mark.asyncio
    async def test_unmounted_drive_is_skipped(self, settings, image, errors):
        drives = [make_drive("/dev/sdb", mountpoints=[]), make_drive("/dev/sdc")]
        hub = make_hub(
            settings, image, errors, list_drives=AsyncMock(return_value=drives)
        )

        await hub.poll()

        assert list(hub.processes) == ["/dev/sdc"]
        await hub.drain()

    @pytest.mark.asyncio
    async def test_drive_is_dispatched_once(self, settings, image, errors):
        hub = make_hub(
            settings,
            image,
            errors,
            list_drives=AsyncMock(return_value=[make_drive()]),
        )
        original_init = FakeWriter.__init__

        def blocking_init(self, *args, **kwargs):
            original_init(self, *args, **kwargs)
            self.release.clear()

        with patch.object(FakeWriter, "__init__", blocking_init):
            for _ in range(5):
                await hub.poll()
            assert len(FakeWriter.instances) == 1
            assert list(hub.processes) == ["/dev/sdb"]

            FakeWriter.instances[0].release.set()
            await hub.drain()

    @pytest.mark.asyncio
    async def test_enumeration_error_is_reported(self, settings, image, errors):
        list_drives = AsyncMock(
            side_effect=[EnumerationError("lsblk exited 1"), [make_drive()]]
        )
        hub = make_hub(settings, image, errors, list_drives=list_drives)

        await hub.poll()
        assert hub.processes == {}
        assert [e.error_code for e in errors.reported] == ["ENUMERATION_ERROR"]

        await hub.poll()
        assert list(hub.processes) == ["/dev/sdb"]
        await hub.drain()

    @pytest.mark.asyncio
    async def test_malformed_lsblk_output_is_reported(self, settings, image, errors):
        good = json.dumps(
            {
                "blockdevices": [
                    {
                        "name": "/dev/sdb",
                        "type": "disk",
                        "size": 1024,
                        "rm": True,
                        "ro": False,
                        "mountpoint": "/media/usb",
                    }
                ]
            }
        )
        hub = make_hub(settings, image, errors, list_drives=list_drives)

        with patch(
            "multiwrite.flash.device._run",
            new=AsyncMock(
                side_effect=[(0, '{"blockdevices": ["sda"]}', ""), (0, good, "")]
            ),
        ):
            await hub.poll()
            await hub.poll()
        await hub.drain()

        assert [e.error_code for e in errors.reported] == ["ENUMERATION_ERROR"]
        assert [w.path for w in FakeWriter.instances] == ["/dev/sdb"]

    @pytest.mark.asyncio
    async def test_scan_stops(self, settings, image, errors):
        hub = make_hub(settings, image, errors)

        async def list_once():
            hub.stop()
            return [make_drive()]

        hub._list_drives = list_once
        await hub.scan()
        await hub.drain()

        assert hub.running is False
        assert len(FakeWriter.instances) == 1


class TestSessionLifecycle:
    """Tests for a dispatched drive from start to release."""

    @pytest.mark.asyncio
    async def test_successful_flash(self, settings, image, errors):
        unmount = AsyncMock(return_value=None)
        hub = make_hub(settings, image, errors, unmount=unmount)

        session = hub.flash(make_drive())
        assert session is not None
        assert session.state is SessionState.DETECTED
        assert session.gauge.total == IMAGE_SIZE * 2

        await hub.drain()

        writer = FakeWriter.instances[0]
        assert writer.image is image
        assert writer.path == "/dev/sdb"
        assert writer.options == {
            "verify": True,
            "checksum_algorithms": ("crc32",),
            "block_size": settings.block_size,
        }
        assert unmount.await_count == 2
        assert session.state is SessionState.UNMOUNTED
        assert session.gauge.value == IMAGE_SIZE * 2
        assert session.gauge.message == "[UNMOUNTED] /dev/sdb"
        assert errors.reported == []

        # Still registered until the hold expires
        assert hub.processes["/dev/sdb"] is session
        assert session.gauge in hub.meter.gauges

        await asyncio.sleep(0.2)

        assert hub.processes == {}
        assert session.state is SessionState.REMOVED
        assert session.gauge not in hub.meter.gauges

    @pytest.mark.asyncio
    async def test_released_drive_can_be_flashed_again(self, settings, image, errors):
        hub = make_hub(settings, image, errors)
        first = hub.flash(make_drive())
        await hub.drain()
        assert hub.flash(make_drive()) is None

        await asyncio.sleep(0.2)

        second = hub.flash(make_drive())
        assert second is not None
        assert second is not first
        await hub.drain()

    @pytest.mark.asyncio
    async def test_unmount_failure(self, settings, image, errors):
        unmount = AsyncMock(side_effect=UnmountError("/dev/sdb", "target is busy"))
        writer_factory = Mock()
        hub = make_hub(
            settings, image, errors, unmount=unmount, writer_factory=writer_factory
        )

        session = hub.flash(make_drive())
        await hub.drain()

        writer_factory.assert_not_called()
        assert session.state is SessionState.ERROR
        assert session.gauge.message == "[ERROR] target is busy"
        assert [e.device for e in errors.reported] == ["/dev/sdb"]
        # Freed at once so a later poll can retry
        assert hub.processes == {}

        await asyncio.sleep(0.2)
        assert session.state is SessionState.REMOVED
        assert session.gauge not in hub.meter.gauges

    @pytest.mark.asyncio
    async def test_write_failure(self, settings, image, errors):
        class FailingWriter(FakeWriter):
            async def write(self, on_progress):
                on_progress(event(ProgressType.WRITE, 10))
                raise WriteEngineError("Error writing to /dev/sdb: I/O error")

        hub = make_hub(settings, image, errors, writer_factory=FailingWriter)

        session = hub.flash(make_drive())
        await hub.drain()

        assert session.state is SessionState.ERROR
        assert session.gauge.message.startswith("[ERROR] Error writing to /dev/sdb")
        assert errors.reported[0].error_code == "WRITE_IO_ERROR"
        assert errors.reported[0].device == "/dev/sdb"
        assert hub.processes == {}

    @pytest.mark.asyncio
    async def test_unexpected_failure(self, settings, image, errors):
        class BrokenWriter(FakeWriter):
            async def write(self, on_progress):
                raise RuntimeError("boom")

        hub = make_hub(settings, image, errors, writer_factory=BrokenWriter)

        session = hub.flash(make_drive())
        await hub.drain()

        assert session.state is SessionState.ERROR
        assert errors.reported[0].error_code == "UNEXPECTED"
        assert errors.reported[0].device == "/dev/sdb"
        assert hub.processes == {}

    @pytest.mark.asyncio
    async def test_final_unmount_failure(self, settings, image, errors):
        unmount = AsyncMock(
            side_effect=[None, UnmountError("/dev/sdb", "target is busy")]
        )
        hub = make_hub(settings, image, errors, unmount=unmount)

        session = hub.flash(make_drive())
        await hub.drain()

        assert session.state is SessionState.FINISHED
        assert session.gauge.message == "[FINISHED]"
        assert [e.error_code for e in errors.reported] == ["UNMOUNT_ERROR"]
        assert "/dev/sdb" in hub.processes

        await asyncio.sleep(0.2)
        assert hub.processes == {}
        assert session.state is SessionState.REMOVED

    @pytest.mark.asyncio
    async def test_session_keeps_image_from_dispatch(self, settings, image, errors):
        hub = make_hub(settings, image, errors)

        session = hub.flash(make_drive())
        hub.image = None
        await hub.drain()

        assert FakeWriter.instances[0].image is image
        assert session.state is SessionState.UNMOUNTED
        assert errors.reported == []

    @pytest.mark.asyncio
    async def test_flash_requires_image(self, settings, image, errors):
        hub = make_hub(settings, image, errors)
        hub.image = None

        with pytest.raises(RuntimeError):
            hub.flash(make_drive())


class TestRun:
    """Tests for Hub.run."""

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, settings, image, errors):
        hub = make_hub(settings, image, errors)
        polls = 0

        async def list_drives():
            nonlocal polls
            polls += 1
            if polls == 3:
                hub.stop()
            return [make_drive("/dev/sdb"), make_drive("/dev/sdc")]

        hub._list_drives = list_drives
        await hub.run()

        assert polls == 3
        assert sorted(w.path for w in FakeWriter.instances) == ["/dev/sdb", "/dev/sdc"]
        assert not hub.meter.running
        assert errors.reported == []
