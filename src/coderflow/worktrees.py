from __future__ import annotations

import re
from pathlib import Path


def sanitize_branch_for_ref(branch: str) -> str:
    normalized = re.sub(r"\s+", "-", branch.strip())
    normalized = re.sub(r"[^0-9A-Za-z._/-]", "-", normalized)
    normalized = re.sub(r"-+", "-", normalized)

    parts: list[str] = []
    for segment in normalized.split("/"):
        if not segment:
            continue
        cleaned = re.sub(r"\.\.+", "-", segment)
        cleaned = cleaned.strip(".")
        cleaned = re.sub(r"\.lock$", "-lock", cleaned, flags=re.IGNORECASE)
        parts.append(cleaned or "-")
    return "/".join(parts) or "branch"


def worktree_path(worktrees_root: Path, branch: str) -> Path:
    root = worktrees_root.resolve()
    candidate = (root / sanitize_branch_for_ref(branch)).resolve()
    if candidate != root and root not in candidate.parents:
        raise ValueError(f"Unsafe worktree path derived from branch: {branch}")
    return candidate
