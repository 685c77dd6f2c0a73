"""
주기 작업 실행 결과를 JSON 파일에 남긴다.
프로세스 재시작 후에도 마지막 성공 시각과 연속 실패 횟수를 확인할 수 있다.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any
import json
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path("var/scheduler_state.json")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def read_scheduler_state(path: Path | str = DEFAULT_STATE_PATH) -> dict[str, Any]:
    state_path = Path(path)
    if not state_path.exists():
        return {}
    try:
        data = json.loads(state_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"[SCHEDULER] Unreadable state file {state_path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def update_scheduler_state(
    name: str,
    status: str,
    meta: dict[str, Any] | None = None,
    path: Path | str = DEFAULT_STATE_PATH,
) -> dict[str, Any]:
    state_path = Path(path)
    state = read_scheduler_state(state_path)
    previous = state.get(name) or {}
    now = _now_iso()

    entry: dict[str, Any] = {
        "status": status,
        "updated_at": now,
        "last_success_at": now if status == "ok" else previous.get("last_success_at"),
        "consecutive_failures": 0 if status == "ok" else int(previous.get("consecutive_failures", 0)) + 1,
    }
    if meta:
        entry["meta"] = meta
    state[name] = entry

    state_path.parent.mkdir(parents=True, exist_ok=True)
    state_path.write_text(json.dumps(state, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
    return state
