"""Process-scoped registry of missions this process is currently driving."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class MissionBusyError(RuntimeError):
	"""The mission is already being driven by this process."""


class MissionRegistry:
	"""Active missions and their in-flight tasks.

	Starts empty; ``drain`` waits for (or cancels) in-flight work at shutdown.
	"""

	def __init__(self) -> None:
		self._active: dict[str, str] = {}  # mission id -> repo
		self._tasks: set[asyncio.Task[object]] = set()

	def is_active(self, mission_id: str) -> bool:
		return mission_id in self._active

	def active(self) -> list[tuple[str, str]]:
		"""(repo, mission id) pairs currently being driven."""
		return [(repo, mid) for mid, repo in self._active.items()]

	@contextmanager
	def claim(self, repo: str, mission_id: str) -> Iterator[None]:
		"""Hold exclusive scheduling rights to a mission for the duration of the block."""
		if mission_id in self._active:
			raise MissionBusyError(f"Mission {mission_id} is already running")
		self._active[mission_id] = repo
		try:
			yield
		finally:
			self._active.pop(mission_id, None)

	def track(self, task: asyncio.Task[object]) -> None:
		"""Remember a mission task until it finishes so ``drain`` can wait for it."""
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	def in_flight(self) -> int:
		return sum(1 for task in self._tasks if not task.done())

	async def drain(self, timeout: float | None = None) -> None:
		"""Wait for tracked tasks; cancel whatever is still running after ``timeout``."""
		tasks = list(self._tasks)
		if not tasks:
			return
		logger.info("Draining %d in-flight mission task(s)", len(tasks))
		done, pending = await asyncio.wait(tasks, timeout=timeout)
		for task in pending:
			task.cancel()
		if pending:
			await asyncio.gather(*pending, return_exceptions=True)
		for task in done:
			if not task.cancelled() and task.exception() is not None:
				logger.error("Mission task ended with error: %s", task.exception())
		self._tasks.clear()
