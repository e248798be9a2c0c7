"""Cross-process locking for mission documents.

A lock is a directory created next to the protected file (``<file>.lock``).
``mkdir`` is atomic on every filesystem we care about, so whichever process
creates the directory owns the lock. Holders that crash leave the directory
behind; a lock whose directory is older than the acquisition timeout is
treated as abandoned and reclaimed.

Example usage:
	async with DirectoryLock(Path("mission.json")):
		...
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRY_INTERVAL = 0.05
MAX_RETRY_INTERVAL = 0.5


class LockError(Exception):
	"""Base exception for locking errors."""


class LockTimeout(LockError):
	"""Raised when a lock cannot be acquired within the timeout. Callers may retry."""


class DirectoryLock:
	"""Async mutual exclusion over a single file via a lock directory."""

	def __init__(
		self,
		target: str | Path,
		timeout: float = DEFAULT_TIMEOUT,
		retry_interval: float = DEFAULT_RETRY_INTERVAL,
	) -> None:
		self.target = Path(target)
		self.lock_path = self.target.with_name(self.target.name + ".lock")
		self.timeout = timeout
		self.retry_interval = retry_interval
		self._held = False

	@property
	def held(self) -> bool:
		return self._held

	def _try_create(self) -> bool:
		try:
			os.mkdir(self.lock_path)
		except FileExistsError:
			return False
		return True

	def _is_stale(self) -> bool:
		try:
			age = time.time() - self.lock_path.stat().st_mtime
		except FileNotFoundError:
			return False
		return age > self.timeout

	def _reclaim(self) -> None:
		logger.warning("Reclaiming stale lock %s", self.lock_path)
		try:
			os.rmdir(self.lock_path)
		except FileNotFoundError:
			pass

	async def acquire(self) -> None:
		"""Acquire the lock, retrying with bounded backoff.

		Raises:
			LockTimeout: If the lock is still held by someone else after ``timeout`` seconds.
		"""
		self.lock_path.parent.mkdir(parents=True, exist_ok=True)
		deadline = time.monotonic() + self.timeout
		interval = self.retry_interval
		while True:
			if self._try_create():
				self._held = True
				return
			if self._is_stale():
				self._reclaim()
				continue
			remaining = deadline - time.monotonic()
			if remaining <= 0:
				raise LockTimeout(f"Timeout acquiring lock {self.lock_path} after {self.timeout:.1f}s")
			await asyncio.sleep(min(interval, remaining))
			interval = min(interval * 1.5, MAX_RETRY_INTERVAL)

	def release(self) -> None:
		if not self._held:
			return
		self._held = False
		try:
			os.rmdir(self.lock_path)
		except FileNotFoundError:
			logger.warning("Lock %s vanished before release (reclaimed as stale?)", self.lock_path)

	async def __aenter__(self) -> DirectoryLock:
		await self.acquire()
		return self

	async def __aexit__(
		self,
		exc_type: type[BaseException] | None,
		exc: BaseException | None,
		tb: TracebackType | None,
	) -> None:
		self.release()
