"""Pull a JSON value out of agent output that may wrap it in prose or fences."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def _loads(text: str) -> Any | None:
	try:
		return json.loads(text)
	except (json.JSONDecodeError, ValueError):
		return None


def extract_json(text: str, expect_array: bool = False) -> Any | None:
	"""Return the first parseable JSON object (or array) in ``text``, else None."""
	if not text or not text.strip():
		return None
	want = list if expect_array else dict

	for block in _FENCE_RE.findall(text):
		value = _loads(block.strip())
		if isinstance(value, want):
			return value

	value = _loads(text.strip())
	if isinstance(value, want):
		return value

	open_char, close_char = ("[", "]") if expect_array else ("{", "}")
	start = text.find(open_char)
	while start != -1:
		end = text.rfind(close_char)
		while end > start:
			value = _loads(text[start:end + 1])
			if isinstance(value, want):
				return value
			end = text.rfind(close_char, start, end)
		start = text.find(open_char, start + 1)
	return None
