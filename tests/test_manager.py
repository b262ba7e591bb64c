import asyncio
import os

import pytest

from notifications.emitter import NotificationEmitter
from payload.codec import decode_payload, file_payload, session_payload
from payload.models import AppDescriptor, FileDescriptor
from security.crypto import derive_file_key, seal
from transfer.manager import TransferManager
from transfer.models import ProgressStatus, TransferStatus

from fakes import accept_all, decline_all


def recorder():
    events = []
    return events, events.append


def milestones(events):
    return [(e.progress, e.status) for e in events]


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF-1.7 quarterly numbers")
    return path


# --- upload ---

async def test_upload_missing_file_fails_at_zero(manager, functions, tmp_path):
    events, on_progress = recorder()

    ok = await manager.upload_file(
        "t1", str(tmp_path / "nope.bin"), "device_a", on_progress=on_progress
    )

    assert ok is False
    assert milestones(events) == [(0, ProgressStatus.UPLOADING), (0, ProgressStatus.FAILED)]
    assert "does not exist" in events[-1].message
    assert functions.uploads == []


async def test_upload_reports_milestones(manager, functions, source):
    events, on_progress = recorder()

    ok = await manager.upload_file("t1", str(source), "device_a", on_progress=on_progress)

    assert ok is True
    assert milestones(events) == [
        (0, ProgressStatus.UPLOADING),
        (25, ProgressStatus.UPLOADING),
        (100, ProgressStatus.COMPLETED),
    ]
    body = functions.uploads[0].content
    assert b"%PDF-1.7 quarterly numbers" in body
    for field in (b'name="transferId"', b'name="deviceId"', b'name="chunkSize"', b"1048576"):
        assert field in body


async def test_upload_accepts_file_uri(manager, functions, source):
    assert await manager.upload_file("t1", source.as_uri(), "device_a") is True
    assert len(functions.uploads) == 1


async def test_upload_endpoint_error_is_reported(manager, functions, source):
    functions.upload_status = 413
    functions.upload_body = {"error": "File too large"}
    events, on_progress = recorder()

    ok = await manager.upload_file("t1", str(source), "device_a", on_progress=on_progress)

    assert ok is False
    assert milestones(events)[-1] == (25, ProgressStatus.FAILED)
    assert "File too large" in events[-1].message
    progress = [e.progress for e in events]
    assert progress == sorted(progress)


async def test_upload_records_returned_file_url(manager, records, functions, source):
    functions.upload_body = {"file_url": "https://cdn.test/report.pdf"}
    shared, _ = await manager.share_file(str(source))

    assert await manager.upload_file(shared.id, str(source), records.device_id) is True

    stored = await records.get_transfer(shared.id)
    assert stored.file_url == "https://cdn.test/report.pdf"
    assert stored.status == TransferStatus.PENDING


# --- download ---

async def test_download_404_writes_nothing(manager, save_dir):
    events, on_progress = recorder()

    path = await manager.download_file("t1", "device_b", "report.pdf", on_progress=on_progress)

    assert path is None
    assert milestones(events) == [(0, ProgressStatus.DOWNLOADING), (0, ProgressStatus.FAILED)]
    assert "Transfer not found" in events[-1].message
    assert not os.path.exists(os.path.join(save_dir, "report.pdf"))


async def test_download_saves_file(manager, functions, save_dir):
    functions.files["t1"] = b"hello"
    events, on_progress = recorder()

    path = await manager.download_file("t1", "device_b", "hello.txt", on_progress=on_progress)

    assert path == os.path.join(save_dir, "hello.txt")
    with open(path, "rb") as f:
        assert f.read() == b"hello"
    assert milestones(events) == [
        (0, ProgressStatus.DOWNLOADING),
        (50, ProgressStatus.DOWNLOADING),
        (100, ProgressStatus.COMPLETED),
    ]
    assert functions.downloads[0].url.params["deviceId"] == "device_b"


async def test_download_keeps_to_save_dir(manager, functions, save_dir):
    functions.files["t1"] = b"data"

    path = await manager.download_file("t1", "device_b", "../../etc/passwd")

    assert path == os.path.join(save_dir, "passwd")


async def test_download_write_failure(manager, functions, tmp_path):
    functions.files["t1"] = b"data"
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("occupied")
    manager.save_dir = str(blocker)
    events, on_progress = recorder()

    path = await manager.download_file("t1", "device_b", "x.txt", on_progress=on_progress)

    assert path is None
    assert milestones(events)[-1] == (50, ProgressStatus.FAILED)


# --- progress registration ---

async def test_callback_is_released_after_failure(manager, tmp_path):
    await manager.upload_file("t1", str(tmp_path / "missing"), "device_a", on_progress=print)

    # a fresh registration for the same transfer is allowed again
    with manager.track("t1", lambda p: None):
        pass


async def test_one_callback_per_transfer(manager):
    with manager.track("t1", lambda p: None):
        with pytest.raises(ValueError):
            with manager.track("t1", lambda p: None):
                pass


async def test_progress_is_broadcast(manager, functions, source):
    broadcast = []

    async def listener(event_type, data):
        broadcast.append((event_type, data["progress"]))

    manager.on_event(listener)
    await manager.upload_file("t1", str(source), "device_a")

    assert broadcast == [
        ("transfer_progress", 0),
        ("transfer_progress", 25),
        ("transfer_progress", 100),
    ]


# --- encryption ---

async def test_encrypted_download(records, notifier, functions_client, functions, save_dir):
    manager = TransferManager(
        records, notifier, client=functions_client, save_dir=save_dir, encrypt=True
    )
    functions.files["t1"] = seal(derive_file_key("transferkey", "t1"), b"secret plan")

    path = await manager.download_file("t1", "device_b", "plan.txt", encryption_key="transferkey")

    with open(path, "rb") as f:
        assert f.read() == b"secret plan"


async def test_encrypted_upload_hides_content(
    records, notifier, functions_client, functions, save_dir, source
):
    manager = TransferManager(
        records, notifier, client=functions_client, save_dir=save_dir, encrypt=True
    )

    assert await manager.upload_file("t1", str(source), "device_a", encryption_key="k") is True
    assert b"quarterly numbers" not in functions.uploads[0].content


async def test_wrong_key_fails_download(records, notifier, functions_client, functions, save_dir):
    manager = TransferManager(
        records, notifier, client=functions_client, save_dir=save_dir, encrypt=True
    )
    functions.files["t1"] = seal(derive_file_key("right", "t1"), b"secret")

    assert await manager.download_file("t1", "device_b", "s.txt", encryption_key="wrong") is None
    assert not os.path.exists(os.path.join(save_dir, "s.txt"))


# --- sharing ---

async def test_share_file_builds_payload(manager, records, source):
    transfer, qr_data = await manager.share_file(str(source))

    payload = decode_payload(qr_data)
    assert payload.file.name == "report.pdf"
    assert payload.file.size == source.stat().st_size
    assert payload.file.type == "application/pdf"
    assert payload.device_id == records.device_id
    assert payload.encryption_key == transfer.encryption_key
    assert transfer.qr_code_data == qr_data
    assert transfer.status == TransferStatus.PENDING


async def test_share_missing_file(manager, tmp_path):
    assert await manager.share_file(str(tmp_path / "gone.txt")) is None


async def test_share_application(manager):
    app = AppDescriptor(name="Notes", package_name="com.example.notes", size=2048)

    transfer, qr_data = await manager.share_application(app)

    assert transfer.file_type == "application"
    assert decode_payload(qr_data).app.name == "Notes"


async def test_cancel_notifies(manager, records, notifier, source):
    transfer, _ = await manager.share_file(str(source))

    cancelled = await manager.cancel_transfer(transfer.id)

    assert cancelled.status == TransferStatus.CANCELLED
    notifications = await notifier.list_notifications(records.device_id)
    assert [n.title for n in notifications] == ["Transfer cancelled"]


# --- scanned payloads ---

async def test_malformed_scan_changes_nothing(manager, records, source):
    transfer, _ = await manager.share_file(str(source))
    alerts = []

    async def listener(event_type, data):
        if event_type == "alert":
            alerts.append(data)

    manager.on_event(listener)

    assert await manager.process_payload("{not json", "device_b") is False
    assert await manager.process_payload('{"type": "karli_share_session"}', "device_b") is False

    assert (await records.get_transfer(transfer.id)).status == TransferStatus.PENDING
    assert [a["type"] for a in alerts] == ["error", "error"]


async def test_session_scan_claims_session(manager, records):
    session, qr_data = await manager.open_session()

    assert await manager.process_payload(qr_data, "device_b") is True
    assert await records.find_claimable_session(session.session_code) is None
    # a second scan of the same code finds nothing
    assert await manager.process_payload(qr_data, "device_b") is False


async def test_unknown_session_code(manager):
    assert await manager.process_payload(session_payload("ZZZZZZ", "device_a"), "device_b") is False


async def test_direct_transfer_end_to_end(
    store, sender_records, records, functions_client, functions, save_dir, identity, tmp_path
):
    sender = TransferManager(
        sender_records, NotificationEmitter(store), client=functions_client, save_dir=save_dir
    )
    source = tmp_path / "report.pdf"
    source.write_bytes(b"x" * 2048)
    transfer, qr_data = await sender.share_file(str(source))
    functions.files[transfer.id] = source.read_bytes()

    receiver_notifier = NotificationEmitter(store)
    receiver = TransferManager(
        records,
        receiver_notifier,
        client=functions_client,
        save_dir=save_dir,
        confirm=accept_all,
    )

    assert await receiver.process_payload(qr_data, identity.device_id) is True

    done = await records.get_transfer(transfer.id)
    assert done.status == TransferStatus.COMPLETED
    assert done.progress == 100
    assert done.receiver_device_id == identity.device_id
    with open(os.path.join(save_dir, "report.pdf"), "rb") as f:
        assert f.read() == b"x" * 2048
    titles = [n.title for n in await receiver_notifier.list_notifications(identity.device_id)]
    assert titles == ["File received"]


async def test_failed_download_marks_transfer_failed(
    store, sender_records, records, functions_client, save_dir, identity, tmp_path
):
    sender = TransferManager(
        sender_records, NotificationEmitter(store), client=functions_client, save_dir=save_dir
    )
    source = tmp_path / "report.pdf"
    source.write_bytes(b"payload")
    transfer, qr_data = await sender.share_file(str(source))
    receiver = TransferManager(
        records, NotificationEmitter(store), client=functions_client,
        save_dir=save_dir, confirm=accept_all,
    )

    # never uploaded, so the download function answers 404
    assert await receiver.process_payload(qr_data, identity.device_id) is False

    failed = await records.get_transfer(transfer.id)
    assert failed.status == TransferStatus.FAILED
    assert failed.progress == 0


async def test_declined_transfer_stays_pending(
    store, sender_records, records, functions_client, save_dir, identity, tmp_path
):
    sender = TransferManager(
        sender_records, NotificationEmitter(store), client=functions_client, save_dir=save_dir
    )
    source = tmp_path / "report.pdf"
    source.write_bytes(b"payload")
    transfer, qr_data = await sender.share_file(str(source))
    receiver = TransferManager(
        records, NotificationEmitter(store), client=functions_client,
        save_dir=save_dir, confirm=decline_all,
    )

    assert await receiver.process_payload(qr_data, identity.device_id) is False

    untouched = await records.get_transfer(transfer.id)
    assert untouched.status == TransferStatus.PENDING
    assert untouched.receiver_device_id is None


async def test_direct_transfer_without_pending_record(manager):
    descriptor = FileDescriptor(name="a.txt", size=1, type="text/plain", uri="file:///a.txt")
    raw = file_payload(descriptor, "device_unknown", "key")

    assert await manager.process_payload(raw, "device_b") is False


async def test_prompt_waits_for_user(
    store, sender_records, records, functions_client, functions, save_dir, identity, tmp_path
):
    sender = TransferManager(
        sender_records, NotificationEmitter(store), client=functions_client, save_dir=save_dir
    )
    source = tmp_path / "notes.txt"
    source.write_bytes(b"notes")
    transfer, qr_data = await sender.share_file(str(source))
    functions.files[transfer.id] = b"notes"

    receiver = TransferManager(
        records, NotificationEmitter(store), client=functions_client, save_dir=save_dir
    )
    requests = []

    async def listener(event_type, data):
        if event_type == "transfer_request":
            requests.append(data)

    receiver.on_event(listener)
    scan = asyncio.create_task(receiver.process_payload(qr_data, identity.device_id))
    while not requests:
        await asyncio.sleep(0)

    assert requests[0]["item_name"] == "notes.txt"
    assert await receiver.respond_to_request(transfer.id, accept=True) is True
    assert await scan is True
    assert await receiver.respond_to_request(transfer.id, accept=True) is False


async def test_second_scan_does_not_steal_the_prompt(
    store, sender_records, records, functions_client, functions, save_dir, identity, tmp_path
):
    sender = TransferManager(
        sender_records, NotificationEmitter(store), client=functions_client, save_dir=save_dir
    )
    source = tmp_path / "notes.txt"
    source.write_bytes(b"notes")
    transfer, qr_data = await sender.share_file(str(source))
    functions.files[transfer.id] = b"notes"

    receiver = TransferManager(
        records, NotificationEmitter(store), client=functions_client, save_dir=save_dir
    )
    requests = []

    async def listener(event_type, data):
        if event_type == "transfer_request":
            requests.append(data)

    receiver.on_event(listener)
    first = asyncio.create_task(receiver.process_payload(qr_data, identity.device_id))
    while not requests:
        await asyncio.sleep(0)

    assert await receiver.process_payload(qr_data, identity.device_id) is False
    assert len(requests) == 1
    assert await receiver.respond_to_request(transfer.id, accept=True) is True
    assert await first is True
    assert (await records.get_transfer(transfer.id)).status == TransferStatus.COMPLETED
