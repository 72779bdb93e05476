from __future__ import annotations

import re


def summarize_text(text: str, *, limit: int = 120) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return f"{one_line[:limit]}..."


def _strip_fence(match: re.Match[str]) -> str:
    block = re.sub(r"```\w*\n?", "", match.group(0))
    return block.replace("```", "")


def clean_markdown_formatting(text: str | None) -> str | None:
    """Turn a markdown answer into plain console text."""
    if not text:
        return text

    text = re.sub(r"```[\s\S]*?```", _strip_fence, text)
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text)
    text = re.sub(r"__(.*?)__", r"\1", text)
    text = re.sub(r"^[ \t]*[-*+][ \t]+", "• ", text, flags=re.MULTILINE)
    text = re.sub(r"\*(.*?)\*", r"\1", text)
    text = re.sub(r"(?<!\w)_(.+?)_(?!\w)", r"\1", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"^#+[ \t]*", "", text, flags=re.MULTILINE)
    text = re.sub(r"^[ \t]*(\d+)\.[ \t]+", r"\1. ", text, flags=re.MULTILINE)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
