from __future__ import annotations

import re
import uuid
from pathlib import PurePosixPath


_TOKEN_ID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$")
_SLUG_DROP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"\s+")


def new_token_id() -> str:
    return str(uuid.uuid4())


def normalize_token_id(token_id: str) -> str:
    """Validate and normalize a session id or preview handle id.

    Both are capability tokens; validate them strictly so route parameters can
    never be anything but a canonical UUID string.
    """
    if not isinstance(token_id, str):
        raise ValueError("Invalid id")
    token_id = token_id.strip()
    if not _TOKEN_ID_RE.match(token_id):
        # uuid.UUID also accepts many formats; we want strict canonical UUID strings.
        raise ValueError("Invalid id")
    return str(uuid.UUID(token_id))


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if "/" in name or "\\" in name:
        return False
    if name in (".", ".."):
        return False
    return True


def entry_basename(entry_path: str) -> str:
    """Last path component of an archive entry ("pages/page-1.png" -> "page-1.png")."""
    return PurePosixPath((entry_path or "").replace("\\", "/")).name


def split_stem(filename: str) -> str:
    """Filename without its final extension ("a.b.png" -> "a.b", "noext" -> "noext")."""
    name = entry_basename(filename)
    if "." not in name.lstrip("."):
        return name
    return name.rsplit(".", 1)[0]


def slugify_prompt(prompt: str, max_len: int = 50) -> str:
    """Lowercase, drop punctuation, hyphenate whitespace, truncate.

    "A Lion, wearing a crown!" -> "a-lion-wearing-a-crown"
    """
    text = _SLUG_DROP_RE.sub("", (prompt or "").lower())
    text = _SLUG_SPACE_RE.sub("-", text.strip())
    return text[:max_len]
