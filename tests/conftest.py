import httpx
import pytest

from identity.provider import DeviceIdentity
from identity.store import KeyValueStore
from notifications.emitter import NotificationEmitter
from storage.memory import MemoryStore
from transfer.manager import TransferManager
from transfer.records import TransferRecordManager

from fakes import FUNCTIONS_URL, FakeFunctions, accept_all


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity(tmp_path):
    return DeviceIdentity(KeyValueStore(tmp_path / "state.json"))


@pytest.fixture
def other_identity(tmp_path):
    return DeviceIdentity(KeyValueStore(tmp_path / "other.json"))


@pytest.fixture
def records(store, identity):
    return TransferRecordManager(store, identity)


@pytest.fixture
def sender_records(store, other_identity):
    """Record manager of a second device sharing the same backend."""
    return TransferRecordManager(store, other_identity)


@pytest.fixture
def notifier(store):
    return NotificationEmitter(store)


@pytest.fixture
def functions():
    return FakeFunctions()


@pytest.fixture
def functions_client(functions):
    return httpx.AsyncClient(base_url=FUNCTIONS_URL, transport=httpx.MockTransport(functions))


@pytest.fixture
def save_dir(tmp_path):
    return str(tmp_path / "downloads")


@pytest.fixture
def manager(records, notifier, functions_client, save_dir):
    return TransferManager(
        records,
        notifier,
        client=functions_client,
        save_dir=save_dir,
        confirm=accept_all,
        encrypt=False,
    )
