from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any

import yaml

from .models import MetadataRecord

_DELIMITER = "---"
_CODE_EXTENSIONS = {".js", ".ts", ".py", ".java", ".cpp", ".c", ".go", ".rs"}


def split(text: str) -> tuple[dict[str, Any], str]:
    """Separate a leading YAML frontmatter block from the document body.

    Returns ``({}, text)`` unchanged when there is no well-formed block.
    """
    stripped = text.lstrip("\ufeff")
    lines = stripped.split("\n")
    if not lines or lines[0].strip() != _DELIMITER:
        return {}, text
    for index in range(1, len(lines)):
        if lines[index].strip() == _DELIMITER:
            block = "\n".join(lines[1:index])
            try:
                data = yaml.safe_load(block) or {}
            except yaml.YAMLError:
                return {}, text
            if not isinstance(data, dict):
                return {}, text
            body = "\n".join(lines[index + 1 :])
            return data, body.lstrip("\n")
    return {}, text


def render(record: MetadataRecord, body: str) -> str:
    header: dict[str, Any] = {"title": record.title, "mode": record.mode}
    if record.tags:
        header["tags"] = list(record.tags)
    if record.language:
        header["language"] = record.language
    block = yaml.safe_dump(header, sort_keys=False, allow_unicode=True).rstrip("\n")
    return f"{_DELIMITER}\n{block}\n{_DELIMITER}\n\n{body}"


def infer_mode(path: str) -> str:
    suffix = PurePosixPath(path).suffix.lower()
    if suffix in _CODE_EXTENSIONS:
        return "code"
    if suffix == ".html":
        return "notes"
    return "markdown"
