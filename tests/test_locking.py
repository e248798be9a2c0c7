"""Tests for the directory-based mission lock."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from commanddeck.locking import DirectoryLock, LockError, LockTimeout


class TestDirectoryLock:
	async def test_acquire_and_release(self, tmp_path: Path) -> None:
		lock = DirectoryLock(tmp_path / "mission.json")
		async with lock:
			assert lock.held
			assert (tmp_path / "mission.json.lock").is_dir()
		assert not lock.held
		assert not (tmp_path / "mission.json.lock").exists()

	async def test_timeout_when_held(self, tmp_path: Path) -> None:
		target = tmp_path / "mission.json"
		holder = DirectoryLock(target, timeout=5.0)
		await holder.acquire()
		future = time.time() + 3600
		os.utime(holder.lock_path, (future, future))
		try:
			contender = DirectoryLock(target, timeout=0.1, retry_interval=0.01)
			with pytest.raises(LockTimeout):
				await contender.acquire()
		finally:
			holder.release()

	async def test_timeout_is_lock_error(self) -> None:
		assert issubclass(LockTimeout, LockError)

	async def test_stale_lock_reclaimed(self, tmp_path: Path) -> None:
		target = tmp_path / "mission.json"
		lock_dir = tmp_path / "mission.json.lock"
		lock_dir.mkdir()
		old = time.time() - 60
		os.utime(lock_dir, (old, old))

		lock = DirectoryLock(target, timeout=1.0, retry_interval=0.01)
		await lock.acquire()
		assert lock.held
		lock.release()

	async def test_waiter_gets_lock_after_release(self, tmp_path: Path) -> None:
		target = tmp_path / "mission.json"
		first = DirectoryLock(target)
		await first.acquire()

		async def _release_later() -> None:
			await asyncio.sleep(0.05)
			first.release()

		second = DirectoryLock(target, timeout=2.0, retry_interval=0.01)
		await asyncio.gather(_release_later(), second.acquire())
		assert second.held
		second.release()

	async def test_release_tolerates_missing_dir(self, tmp_path: Path) -> None:
		lock = DirectoryLock(tmp_path / "mission.json")
		await lock.acquire()
		os.rmdir(lock.lock_path)
		lock.release()
		assert not lock.held

	async def test_released_on_exception(self, tmp_path: Path) -> None:
		lock = DirectoryLock(tmp_path / "mission.json")
		with pytest.raises(RuntimeError):
			async with lock:
				raise RuntimeError("boom")
		assert not lock.lock_path.exists()
