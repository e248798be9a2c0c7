"""Status notifications: log/console output and batched Telegram delivery.

TelegramNotifier uses an async httpx client. Messages posted within
BATCH_WINDOW seconds are joined into one send; when more than MAX_PENDING
messages are waiting, the oldest routine ones are dropped before urgent ones.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import deque
from typing import TextIO

import httpx

from commanddeck.collaborators import Notifier

logger = logging.getLogger(__name__)

BATCH_WINDOW = 5.0
MAX_PENDING = 100
TELEGRAM_MAX_LEN = 4096
SEPARATOR = "\n---\n"
_URGENT_MARKERS = ("RED ALERT", "failed", "Checkpoint", "paused", "authentication")


def is_urgent(text: str) -> bool:
	return any(marker in text for marker in _URGENT_MARKERS)


def chunk_message(text: str, max_len: int = TELEGRAM_MAX_LEN) -> list[str]:
	"""Split on SEPARATOR boundaries; hard-split any single part longer than max_len."""
	if len(text) <= max_len:
		return [text]
	chunks: list[str] = []
	buf = ""
	for part in text.split(SEPARATOR):
		while len(part) > max_len:
			if buf:
				chunks.append(buf)
				buf = ""
			chunks.append(part[:max_len])
			part = part[max_len:]
		candidate = f"{buf}{SEPARATOR}{part}" if buf else part
		if len(candidate) <= max_len:
			buf = candidate
		else:
			chunks.append(buf)
			buf = part
	if buf:
		chunks.append(buf)
	return chunks


class ConsoleNotifier(Notifier):
	"""Writes notifications to a stream and the log."""

	def __init__(self, stream: TextIO | None = None) -> None:
		self._stream = stream

	async def post(self, text: str) -> None:
		logger.info("notify: %s", text.splitlines()[0] if text else "")
		stream = self._stream or sys.stdout
		print(text, file=stream, flush=True)


class TelegramNotifier(Notifier):
	"""Sends mission updates to a Telegram chat via the Bot API."""

	def __init__(self, bot_token: str, chat_id: str, batch_window: float = BATCH_WINDOW) -> None:
		self._bot_token = bot_token
		self._chat_id = chat_id
		self._batch_window = batch_window
		self._client: httpx.AsyncClient | None = None
		self._pending: deque[tuple[bool, str]] = deque()
		self._wakeup = asyncio.Event()
		self._flusher: asyncio.Task[None] | None = None

	@property
	def url(self) -> str:
		return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

	def _client_or_new(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=10.0)
		return self._client

	def _start_flusher(self) -> None:
		if self._flusher is None or self._flusher.done():
			self._flusher = asyncio.create_task(self._flush_loop())

	async def _flush_loop(self) -> None:
		while True:
			try:
				await self._wakeup.wait()
				self._wakeup.clear()
				await asyncio.sleep(self._batch_window)
			except asyncio.CancelledError:
				return
			await self._send([text for _, text in self._drain()])

	def _drain(self) -> list[tuple[bool, str]]:
		drained = list(self._pending)
		self._pending.clear()
		return drained

	def _trim(self) -> None:
		overflow = len(self._pending) - MAX_PENDING
		if overflow <= 0:
			return
		kept: deque[tuple[bool, str]] = deque()
		dropped = 0
		for urgent, text in self._pending:
			if not urgent and dropped < overflow:
				dropped += 1
				continue
			kept.append((urgent, text))
		self._pending = kept
		if dropped:
			logger.warning("Telegram backlog full: dropped %d routine notifications", dropped)

	async def _send(self, messages: list[str]) -> None:
		if not messages:
			return
		try:
			client = self._client_or_new()
			for chunk in chunk_message(SEPARATOR.join(messages)):
				response = await client.post(self.url, json={
					"chat_id": self._chat_id,
					"text": chunk,
					"disable_web_page_preview": True,
				})
				if response.status_code >= 400:
					logger.warning("Telegram API returned %d: %s", response.status_code, response.text[:200])
		except httpx.HTTPError as exc:
			logger.warning("Telegram send failed: %s", exc)

	async def post(self, text: str) -> None:
		self._pending.append((is_urgent(text), text))
		self._trim()
		self._start_flusher()
		self._wakeup.set()

	async def close(self) -> None:
		"""Flush anything still queued and close the HTTP client."""
		if self._flusher is not None and not self._flusher.done():
			self._flusher.cancel()
			try:
				await self._flusher
			except asyncio.CancelledError:
				pass
		await self._send([text for _, text in self._drain()])
		if self._client is not None:
			await self._client.aclose()
			self._client = None


class FanoutNotifier(Notifier):
	"""Posts to several notifiers; one failing does not stop the others."""

	def __init__(self, notifiers: list[Notifier]) -> None:
		self.notifiers = notifiers

	async def post(self, text: str) -> None:
		for notifier in self.notifiers:
			try:
				await notifier.post(text)
			except Exception as exc:
				logger.warning("Notifier %s failed: %s", type(notifier).__name__, exc)

	async def close(self) -> None:
		for notifier in self.notifiers:
			await notifier.close()
