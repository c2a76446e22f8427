import posixpath


def normalize_relative_path(path: str) -> str:
    """Turn a model-supplied path into a path relative to the working root.

    Leading slashes and ``./`` are dropped; anything resolving outside the
    root is rejected.
    """
    p = (path or "").strip().lstrip("/")
    p = posixpath.normpath(p) if p else "."
    if p == ".." or p.startswith("../"):
        raise ValueError(f"Path escapes the working directory: {path}")
    return p


def truncate_tail(text: str, limit: int) -> str:
    """Keep the last ``limit`` characters, noting how much was dropped."""
    if len(text) <= limit:
        return text
    return f"[... {len(text) - limit} earlier characters trimmed ...]\n" + text[-limit:]
