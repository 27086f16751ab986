"""Unified-diff proposals extracted from fenced ``file="..."`` code blocks."""

from __future__ import annotations

import difflib
import re
import uuid
from typing import Any, Mapping

from relaygate.util.logger import logger


# ```python file="src/app.py"
_CODE_BLOCK_RE = re.compile(r"```(\w+)?[ \t]+file=\"([^\"]+)\"[ \t]*\n(.*?)```", re.DOTALL)


def _original_content(file_path: str, context: Mapping[str, Any] | None) -> str:
    if not context:
        return ""
    active_file = context.get("activeFile")
    if isinstance(active_file, Mapping) and active_file.get("path") == file_path:
        return str(active_file.get("content") or "")
    return ""


def build_patch(file_path: str, original: str, modified: str) -> str:
    lines = difflib.unified_diff(
        original.splitlines(keepends=True),
        modified.splitlines(keepends=True),
        fromfile=f"a/{file_path}",
        tofile=f"b/{file_path}",
    )
    return "".join(line if line.endswith("\n") else f"{line}\n" for line in lines)


def extract_diffs(response: str, context: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
    diffs: list[dict[str, Any]] = []
    for match in _CODE_BLOCK_RE.finditer(response or ""):
        file_path = match.group(2)
        new_content = match.group(3).strip() + "\n"
        patch = build_patch(file_path, _original_content(file_path, context), new_content)
        if not patch:
            continue
        diff = {
            "id": str(uuid.uuid4()),
            "filePath": file_path,
            "patch": patch,
            "description": f"Update {file_path}",
        }
        diffs.append(diff)
        logger.info("extracted diff file_path=%s diff_id=%s", file_path, diff["id"])
    return diffs
