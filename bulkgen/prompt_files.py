"""Extract flat prompt lists from uploaded text, JSON or CSV files."""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Iterable, List

from .exceptions import PromptFileError


def _clean(values: Iterable[object]) -> List[str]:
    return [text for text in (str(value).strip() for value in values if value is not None) if text]


def parse_text_prompts(content: str) -> List[str]:
    """One prompt per line; blank lines and ``#`` comments are skipped."""

    return [line for line in _clean(content.splitlines()) if not line.startswith("#")]


def parse_json_prompts(content: str) -> List[str]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return parse_text_prompts(content)

    if isinstance(data, list):
        values = [
            item if isinstance(item, str) else (item.get("prompt") or item.get("text") or "")
            for item in data
            if isinstance(item, (str, dict))
        ]
        return _clean(values)
    if isinstance(data, dict) and isinstance(data.get("prompts"), list):
        return _clean(data["prompts"])
    return []


def parse_csv_prompts(content: str) -> List[str]:
    """Use the first column; a header row mentioning ``prompt`` is skipped."""

    rows = [row for row in csv.reader(io.StringIO(content)) if row and any(cell.strip() for cell in row)]
    if rows and "prompt" in ",".join(rows[0]).lower():
        rows = rows[1:]
    return _clean(row[0].strip().strip("\"'") for row in rows)


def parse_prompt_file(filename: str, data: bytes) -> List[str]:
    try:
        content = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise PromptFileError("Prompt file must be UTF-8 text") from exc

    suffix = Path(filename or "").suffix.lower()
    if suffix == ".json":
        return parse_json_prompts(content)
    if suffix == ".csv":
        return parse_csv_prompts(content)
    return parse_text_prompts(content)
