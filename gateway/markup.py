from __future__ import annotations

MARKDOWN_V2_PARSE_MODE = "MarkdownV2"

RESERVED_CHARS = frozenset("_*[]()~`>#+-=|{}.!")


def escape_markdown(text: str) -> str:
    # Not idempotent: escape untrusted text once, where it enters a message.
    return "".join(f"\\{ch}" if ch in RESERVED_CHARS else ch for ch in text)
