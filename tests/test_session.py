import asyncio

import pytest

from devlink.config import DEFAULT_QUICK_COMMANDS, SessionConfig
from devlink.errors import (
    DeviceBusyError,
    NotConnectedError,
    PathNotFoundError,
    ReadError,
    TransportLostError,
)
from devlink.process import ProcessState, Role
from devlink.session import DeviceSession

from fakes import FakeAuthenticator, FakeReader, FakeTransport, RecordingListener, dir_entry, file_entry


def _session(transport=None, config=None, error=None):
    transport = transport or FakeTransport()
    listener = RecordingListener()
    session = DeviceSession(
        FakeAuthenticator(transport, error=error),
        "kobo-1234",
        config=config,
        listener=listener,
    )
    return session, transport, listener


@pytest.mark.asyncio
async def test_connect_lists_initial_directory():
    transport = FakeTransport()
    transport.dirs["/"] = [file_entry("b.txt"), dir_entry("A"), file_entry("a.txt")]
    session, _, listener = _session(transport)

    await session.connect()

    assert session.connected
    assert listener.connected == [True]
    assert listener.directories == [("/", ["A", "a.txt", "b.txt"])]
    assert "Connected!" in listener.lines


@pytest.mark.asyncio
async def test_connect_twice_authenticates_once():
    session, _, _ = _session()
    await session.connect()
    await session.connect()
    assert session._authenticator.attempts == 1


@pytest.mark.asyncio
async def test_disconnect_stops_processes_before_closing_transport():
    session, transport, listener = _session()
    await session.connect()
    await session.start_log_tail()

    await session.disconnect()

    process = transport.processes[0]
    assert process.killed
    assert all(reader.released for reader in process.readers)
    close_at = transport.calls.index("transport_close")
    assert transport.calls.index("kill") < close_at
    assert transport.calls.index("release:stdout") < close_at
    assert transport.calls.index("release:stderr") < close_at
    assert listener.connected == [True, False]
    assert not session.connected
    assert session.processes is None


@pytest.mark.asyncio
async def test_connect_failure_is_classified_and_leaves_session_disconnected():
    session, transport, listener = _session(error=RuntimeError("resource busy"))

    with pytest.raises(DeviceBusyError):
        await session.connect()

    assert not session.connected
    assert "transport_close" not in transport.calls
    assert any(line.startswith("Connect failed:") for line in listener.lines)


@pytest.mark.asyncio
async def test_operations_require_a_connection():
    session, _, _ = _session()

    with pytest.raises(NotConnectedError):
        await session.run_command("ls")
    with pytest.raises(NotConnectedError):
        await session.navigate("/")


@pytest.mark.asyncio
async def test_run_command_streams_output_and_ends():
    session, transport, listener = _session()
    await session.connect()
    transport.script(FakeReader([b"hi\n"], name="stdout"), FakeReader([], name="stderr"))

    record = await session.run_command("  echo hi ")
    await record.task

    assert transport.spawned[-1] == ["sh", "-c", '"echo hi"']
    assert listener.output == [(Role.COMMAND, "stdout", "hi\n")]
    assert (Role.COMMAND, ProcessState.STOPPED) in listener.states
    assert "> echo hi" in listener.lines
    assert listener.lines[-1] == "command ended."


@pytest.mark.asyncio
async def test_empty_command_is_not_spawned():
    session, transport, listener = _session()
    await session.connect()

    assert await session.run_command("   ") is None
    assert transport.spawned == []
    assert listener.lines[-1] == "Type a command first"


@pytest.mark.asyncio
async def test_stop_command_when_idle_does_nothing():
    session, transport, _ = _session()
    await session.connect()
    await session.stop_command()
    await session.stop_log_tail()
    assert "kill" not in transport.calls


@pytest.mark.asyncio
async def test_run_quick_returns_first_output():
    session, transport, listener = _session()
    await session.connect()
    transport.script(FakeReader([b"  injected\n"], end=False, name="output"))

    text = await session.run_quick("gammaray")

    assert text == "injected"
    assert transport.spawned[-1] == ["sh", "-c", DEFAULT_QUICK_COMMANDS["gammaray"]]
    assert listener.lines[-1] == "injected"

    reader = transport.processes[-1].readers[0]
    assert not reader.released
    reader.end()
    await asyncio.gather(*session._quick)

    assert transport.processes[-1].killed
    assert reader.released


@pytest.mark.asyncio
async def test_fire_and_forget_quick_command_is_not_read():
    session, transport, listener = _session()
    await session.connect()
    reader = FakeReader(end=False, name="output")
    transport.script(reader)

    assert await session.run_quick("reboot") == ""
    assert reader.reads == 0
    assert listener.lines[-1] == "Running reboot"
    await session.disconnect()
    assert reader.released


@pytest.mark.asyncio
async def test_disconnect_closes_running_quick_command_first():
    session, transport, _ = _session()
    await session.connect()
    reader = FakeReader(end=False, name="output")
    transport.script(reader)
    await session.run_quick("usb-dialog")

    await session.disconnect()

    assert reader.released
    assert transport.calls.index("kill") < transport.calls.index("transport_close")
    assert not session._quick


@pytest.mark.asyncio
async def test_quick_command_release_failure_does_not_hide_read_error():
    class BrokenReader(FakeReader):
        def release(self):
            raise RuntimeError("release failed")

    session, transport, _ = _session()
    await session.connect()
    reader = BrokenReader(end=False, name="output")
    reader.fail(OSError("channel reset"))
    transport.script(reader)

    with pytest.raises(ReadError):
        await session.run_quick("gammaray")

    assert transport.processes[-1].killed
    assert session.connected


@pytest.mark.asyncio
async def test_unknown_quick_command():
    session, _, _ = _session()
    await session.connect()
    with pytest.raises(KeyError):
        await session.run_quick("format-disk")


@pytest.mark.asyncio
async def test_push_reports_progress_and_lands_in_push_dir(tmp_path):
    book = tmp_path / "book.epub"
    book.write_bytes(b"k" * 1000)
    session, transport, listener = _session(config=SessionConfig(chunk_size=500))
    await session.connect()

    task = await session.push_file(book, permission=0o644)

    assert listener.progress == [0.5, 1.0, 1.0]
    assert task.sent_bytes == 1000
    assert transport.files["/mnt/onboard/.kobo/book.epub"] == b"k" * 1000
    assert transport.permissions["/mnt/onboard/.kobo/book.epub"] == 0o644
    assert listener.lines[-1] == "Push complete"


@pytest.mark.asyncio
async def test_preview_head_logs_bounded_block():
    transport = FakeTransport(chunk_size=16)
    transport.files["/etc/version"] = b"X" * 100
    session, _, listener = _session(transport)
    await session.connect()

    data = await session.preview_head("/etc/version", 10)

    assert data == b"X" * 10
    assert listener.lines[-1] == (
        "----- BEGIN /etc/version (first 10 bytes) -----\n"
        "XXXXXXXXXX\n"
        "----- END version -----"
    )
    assert not session.sync.busy


@pytest.mark.asyncio
async def test_download_into_directory(tmp_path):
    transport = FakeTransport()
    transport.files["/mnt/onboard/notes.txt"] = b"abcdefghij"
    session, _, listener = _session(transport)
    await session.connect()

    task = await session.download_file("/mnt/onboard/notes.txt", tmp_path, size_hint=10)

    assert (tmp_path / "notes.txt").read_bytes() == b"abcdefghij"
    assert task.sent_bytes == 10
    assert listener.progress == [0.4, 0.8, 1.0, 1.0]


@pytest.mark.asyncio
async def test_failed_download_removes_partial_file(tmp_path):
    session, _, _ = _session()
    await session.connect()
    target = tmp_path / "out.bin"

    with pytest.raises(PathNotFoundError):
        await session.download_file("/missing.bin", target)

    assert not target.exists()
    assert session.connected


@pytest.mark.asyncio
async def test_navigation_through_session():
    transport = FakeTransport()
    transport.dirs["/mnt"] = [dir_entry("onboard")]
    transport.dirs["/mnt/onboard"] = []
    session, _, listener = _session(transport)
    await session.connect()

    await session.navigate("/mnt/onboard")
    await session.go_up()
    await session.refresh()

    assert [path for path, _ in listener.directories] == ["/", "/mnt/onboard", "/mnt", "/mnt"]
    assert session.browser.current_path == "/mnt"


@pytest.mark.asyncio
async def test_lost_transport_disconnects_session():
    class DroppingTransport(FakeTransport):
        dropped = False

        async def open_sync(self):
            if self.dropped:
                raise TransportLostError("device unplugged")
            return await super().open_sync()

    transport = DroppingTransport()
    session, _, listener = _session(transport)
    await session.connect()

    transport.dropped = True
    with pytest.raises(TransportLostError):
        await session.refresh()

    assert not session.connected
    assert listener.connected == [True, False]
    assert transport.closed


@pytest.mark.asyncio
async def test_overlapping_connects_share_one_connection():
    gate = asyncio.Event()

    class SlowAuthenticator(FakeAuthenticator):
        async def authenticate(self, device_id, credentials):
            self.attempts += 1
            await gate.wait()
            return self.transport

    transport = FakeTransport()
    listener = RecordingListener()
    session = DeviceSession(SlowAuthenticator(transport), "kobo-1234", listener=listener)

    first = asyncio.create_task(session.connect())
    second = asyncio.create_task(session.connect())
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(first, second)

    assert session._authenticator.attempts == 1
    assert listener.connected == [True]

    await session.disconnect()
    assert transport.closed
    assert listener.connected == [True, False]


@pytest.mark.asyncio
async def test_disconnect_waits_for_connect_in_progress():
    gate = asyncio.Event()

    class SlowAuthenticator(FakeAuthenticator):
        async def authenticate(self, device_id, credentials):
            self.attempts += 1
            await gate.wait()
            return self.transport

    transport = FakeTransport()
    session = DeviceSession(SlowAuthenticator(transport), "kobo-1234")

    connecting = asyncio.create_task(session.connect())
    await asyncio.sleep(0)
    disconnecting = asyncio.create_task(session.disconnect())
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(connecting, disconnecting)

    assert not session.connected
    assert transport.closed


@pytest.mark.asyncio
async def test_log_tail_losing_transport_disconnects_session():
    session, transport, listener = _session()
    await session.connect()
    failing = FakeReader(end=False, name="stdout")
    failing.fail(TransportLostError("link dropped"))
    transport.script(failing, FakeReader(end=False, name="stderr"))

    record = await session.start_log_tail()
    await record.task
    await session._disconnect_task

    assert isinstance(record.error, TransportLostError)
    assert not session.connected
    assert transport.closed
    assert listener.connected == [True, False]
    assert "Connection lost" in listener.lines


@pytest.mark.asyncio
async def test_ordinary_read_error_keeps_session_connected():
    session, transport, listener = _session()
    await session.connect()
    failing = FakeReader(end=False, name="stdout")
    failing.fail(OSError("short read"))
    transport.script(failing, FakeReader(end=False, name="stderr"))

    record = await session.start_log_tail()
    await record.task

    assert isinstance(record.error, ReadError)
    assert session._disconnect_task is None
    assert session.connected


@pytest.mark.asyncio
async def test_unreadable_local_file_is_reported_not_a_device_error(tmp_path, monkeypatch):
    book = tmp_path / "book.epub"
    book.write_bytes(b"k" * 10)
    session, _, listener = _session()
    await session.connect()

    async def unreadable(path, chunk_size):
        raise PermissionError(13, "Permission denied", str(path))
        yield b""

    monkeypatch.setattr("devlink.session._read_local", unreadable)
    with pytest.raises(PermissionError) as excinfo:
        await session.push_file(book)

    assert type(excinfo.value) is PermissionError
    assert session.connected
    assert any(line.startswith("push failed:") for line in listener.lines)
