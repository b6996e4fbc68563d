from __future__ import annotations

import json
import os
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

FENCED_JSON_PATTERN = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def age_ms(value: Any, *, now: datetime | None = None) -> float | None:
    parsed = parse_iso(value)
    if parsed is None:
        return None
    current = now or datetime.now(UTC)
    return max(0.0, (current - parsed).total_seconds() * 1000)


def is_pid_alive(pid: Any) -> bool | None:
    """Return liveness of ``pid``; None when the value is not a usable pid."""
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def truncate(text: str, limit: int = 300) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def extract_json(stdout: str) -> Any:
    """Best-effort extraction of a JSON payload embedded in agent output."""
    trimmed = (stdout or "").strip()
    if not trimmed:
        raise ValueError("Empty response: no JSON to extract.")

    # Whole-text parse first so envelopes whose string values contain fences win.
    if trimmed.startswith("{") or trimmed.startswith("["):
        try:
            return json.loads(trimmed)
        except json.JSONDecodeError:
            pass

    first_brace = trimmed.find("{")
    last_brace = trimmed.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        try:
            return json.loads(trimmed[first_brace : last_brace + 1])
        except json.JSONDecodeError:
            pass

    fenced = FENCED_JSON_PATTERN.search(trimmed)
    if fenced:
        try:
            return json.loads(fenced.group(1).strip())
        except json.JSONDecodeError as exc:
            raise ValueError(f"Fenced JSON block is invalid: {exc}") from exc

    preview = truncate(trimmed, 200)
    raise ValueError(f"No JSON object found in response. Preview:\n{preview}")


def build_secrets(pass_env: Iterable[str], env: Mapping[str, str] | None = None) -> dict[str, str]:
    source = os.environ if env is None else env
    secrets: dict[str, str] = {}
    for key in pass_env:
        value = source.get(key)
        if value:
            secrets[key] = value
    # Gemini CLI reads GEMINI_API_KEY in some modes; mirror whichever one is set.
    if not secrets.get("GEMINI_API_KEY") and secrets.get("GOOGLE_API_KEY"):
        secrets["GEMINI_API_KEY"] = secrets["GOOGLE_API_KEY"]
    if not secrets.get("GOOGLE_API_KEY") and secrets.get("GEMINI_API_KEY"):
        secrets["GOOGLE_API_KEY"] = secrets["GEMINI_API_KEY"]
    return secrets
