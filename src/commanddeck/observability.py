"""Structured lifecycle events and persisted health alerts."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from commanddeck.models import HealthAlert, _now_iso

event_logger = logging.getLogger("commanddeck.events")


def log_event(event: str, **fields: Any) -> dict[str, Any]:
	"""Emit one JSON object describing a lifecycle event. Returns the payload."""
	payload: dict[str, Any] = {"ts": _now_iso(), "event": event}
	payload.update(fields)
	event_logger.info(json.dumps(payload, default=str, sort_keys=True))
	return payload


def persist_health_alert(path: Path, alert: HealthAlert, mission_id: str = "") -> None:
	"""Append an alert as one NDJSON line."""
	path.parent.mkdir(parents=True, exist_ok=True)
	record = alert.to_dict()
	if mission_id:
		record["mission_id"] = mission_id
	with open(path, "a", encoding="utf-8") as f:
		f.write(json.dumps(record) + "\n")


def read_health_alerts(path: Path) -> list[dict[str, Any]]:
	"""Read persisted alerts, skipping lines that fail to parse."""
	if not path.exists():
		return []
	alerts: list[dict[str, Any]] = []
	for line in path.read_text(encoding="utf-8").splitlines():
		line = line.strip()
		if not line:
			continue
		try:
			alerts.append(json.loads(line))
		except json.JSONDecodeError:
			continue
	return alerts
