"""Thin async wrapper over the git CLI."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


async def run_git(cwd: str | Path, *args: str, timeout: float | None = None) -> tuple[bool, str]:
	"""Run a git command in ``cwd``. Returns (ok, combined stdout/stderr)."""
	proc = await asyncio.create_subprocess_exec(
		"git", *args,
		cwd=str(cwd),
		stdout=asyncio.subprocess.PIPE,
		stderr=asyncio.subprocess.STDOUT,
	)
	try:
		stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		logger.warning("git %s timed out after %ss in %s", " ".join(args), timeout, cwd)
		try:
			proc.kill()
			await proc.wait()
		except ProcessLookupError:
			pass
		return (False, f"git {args[0] if args else ''} timed out")
	output = stdout.decode(errors="replace") if stdout else ""
	return (proc.returncode == 0, output)
