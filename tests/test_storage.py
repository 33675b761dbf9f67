import ipaddress
import threading
import time

import pytest
import yaml

from docker_ipam.errors import PersistenceError
from docker_ipam.models import IpamState, Lease, Pool
from docker_ipam.storage import ReadWriteLock, StateStore, read_state_file, write_state_file


def _sample_state() -> IpamState:
    pool = Pool(pool_id="pool-1", subnet=ipaddress.ip_network("10.0.0.0/24"))
    lease = Lease(ip_address=ipaddress.ip_address("10.0.0.1"), container_name="web")
    return IpamState(pools={"pool-1": pool}, leases=[lease])


class TestStateFile:
    def test_missing_file_returns_none(self, tmp_path):
        assert read_state_file(tmp_path / "absent.yaml") is None

    def test_write_then_read(self, tmp_path):
        path = tmp_path / "state.yaml"
        state = _sample_state()
        write_state_file(path, state)

        loaded = read_state_file(path)
        assert loaded == state

    def test_document_layout(self, tmp_path):
        path = tmp_path / "state.yaml"
        write_state_file(path, _sample_state())

        data = yaml.safe_load(path.read_text())
        assert data["pools"]["pool-1"] == {"pool_id": "pool-1", "subnet": "10.0.0.0/24", "gateway": None}
        assert data["leases"][0]["ip_address"] == "10.0.0.1"
        assert data["leases"][0]["container_name"] == "web"
        assert isinstance(data["leases"][0]["lease_time"], str)

    def test_no_temp_files_left_behind(self, tmp_path):
        path = tmp_path / "state.yaml"
        write_state_file(path, _sample_state())
        write_state_file(path, IpamState())
        assert [p.name for p in tmp_path.iterdir()] == ["state.yaml"]

    def test_corrupt_yaml_raises(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("pools: [unclosed\n")
        with pytest.raises(PersistenceError):
            read_state_file(path)

    def test_non_mapping_raises(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(PersistenceError):
            read_state_file(path)

    def test_bad_entry_raises(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("pools:\n  pool-1:\n    pool_id: pool-1\n    subnet: nonsense\n")
        with pytest.raises(PersistenceError):
            read_state_file(path)

    def test_write_failure_raises(self, tmp_path, monkeypatch):
        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("docker_ipam.storage.os.replace", broken_replace)
        path = tmp_path / "state.yaml"
        with pytest.raises(PersistenceError):
            write_state_file(path, _sample_state())
        assert not path.exists()
        assert list(tmp_path.iterdir()) == []


class TestStateStore:
    def test_open_without_file_is_empty(self, tmp_path):
        path = tmp_path / "nested" / "state.yaml"
        store = StateStore.open(path)
        assert store.with_state(lambda s: (s.pools, s.leases)) == ({}, [])
        assert path.parent.is_dir()
        assert not path.exists()

    def test_open_corrupt_file_fails(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("{{{{")
        with pytest.raises(PersistenceError):
            StateStore.open(path)

    def test_with_state_mut_saves(self, store, state_file):
        def add(state):
            state.pools["pool-1"] = Pool(pool_id="pool-1", subnet=ipaddress.ip_network("10.0.0.0/24"))
            return "done"

        assert store.with_state_mut(add) == "done"
        assert "pool-1" in read_state_file(state_file).pools

    def test_with_state_mut_skips_save_on_error(self, store, state_file):
        def fail(state):
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            store.with_state_mut(fail)
        assert not state_file.exists()

    def test_save_failure_surfaces(self, store, monkeypatch):
        def broken_write(path, state):
            raise PersistenceError("disk full")

        monkeypatch.setattr("docker_ipam.storage.write_state_file", broken_write)
        with pytest.raises(PersistenceError):
            store.with_state_mut(lambda state: None)

    def test_reload_picks_up_file(self, store, state_file):
        write_state_file(state_file, _sample_state())
        store.reload()
        assert store.with_state(lambda s: list(s.pools)) == ["pool-1"]

    def test_lock_released_after_error(self, store):
        def explode(state):
            raise ValueError("boom")

        with pytest.raises(ValueError):
            store.with_state(explode)
        # A writer must still be able to get in.
        store.with_state_mut(lambda s: None)


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def reader():
            lock.acquire_read()
            acquired.set()
            lock.release_read()

        thread = threading.Thread(target=reader)
        thread.start()
        assert acquired.wait(timeout=2)
        thread.join()
        lock.release_read()

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        lock.acquire_write()
        acquired = threading.Event()

        def reader():
            lock.acquire_read()
            acquired.set()
            lock.release_read()

        thread = threading.Thread(target=reader)
        thread.start()
        time.sleep(0.05)
        assert not acquired.is_set()
        lock.release_write()
        assert acquired.wait(timeout=2)
        thread.join()
