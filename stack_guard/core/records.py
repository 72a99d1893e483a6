"""
Key=Value Records
~~~~~~~~~~~~~~~~~

Stable, human-readable ``key=value`` text used for snapshot and archive
metadata. Lists are stored as indexed keys (``path.0``, ``path.1``) and
free-form metadata under a dotted prefix (``meta.owner``).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

__all__ = ["dump_record", "load_record", "list_field", "prefixed_fields"]

_HEADER = "# stack-guard record v1"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def _unescape(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        out.append({"n": "\n", "r": "\r", "\\": "\\"}.get(nxt, nxt))
    return "".join(out)


def dump_record(
    fields: Mapping[str, object],
    lists: Mapping[str, Iterable[str]] | None = None,
    prefixed: Mapping[str, Mapping[str, object]] | None = None,
) -> str:
    """
    Serialize scalar fields, list fields and prefixed maps to record text.

    Args:
        fields: Scalar values; ``None`` values are omitted.
        lists: Lists written as ``name.<index>=value``.
        prefixed: Maps written as ``prefix.<key>=value``.

    Returns:
        The record text, newline terminated.
    """
    lines = [_HEADER]
    for key, value in fields.items():
        if value is None:
            continue
        lines.append(f"{key}={_escape(str(value))}")
    for name, items in (lists or {}).items():
        for index, item in enumerate(items):
            lines.append(f"{name}.{index}={_escape(str(item))}")
    for prefix, mapping in (prefixed or {}).items():
        for key in sorted(mapping):
            lines.append(f"{prefix}.{key}={_escape(str(mapping[key]))}")
    return "\n".join(lines) + "\n"


def load_record(text: str) -> dict[str, str]:
    """Parse record text into a flat ``{key: value}`` dict."""
    data: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise ValueError(f"Malformed record line: {raw!r}")
        data[key.strip()] = _unescape(value)
    return data


def list_field(data: Mapping[str, str], name: str) -> list[str]:
    """Collect ``name.<index>`` entries in index order."""
    indexed: list[tuple[int, str]] = []
    prefix = f"{name}."
    for key, value in data.items():
        if key.startswith(prefix) and key[len(prefix):].isdigit():
            indexed.append((int(key[len(prefix):]), value))
    return [value for _, value in sorted(indexed)]


def prefixed_fields(data: Mapping[str, str], prefix: str) -> dict[str, str]:
    """Collect ``prefix.<key>`` entries into a dict keyed by ``<key>``."""
    start = f"{prefix}."
    return {
        key[len(start):]: value for key, value in data.items() if key.startswith(start)
    }
