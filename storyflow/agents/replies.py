"""
Helpers for pulling structured data out of model replies.
"""

import json
import re


def strip_markdown_fences(text: str) -> str:
    """Strip markdown code fences from text if present."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if lines and lines[0].strip().startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)
    return text


def extract_json_object(text: str) -> dict:
    """Find the JSON object in a reply that may carry prose around it.

    Looks for a fenced ```json block first, then for the outermost braces.

    Raises:
        ValueError: If no JSON object can be decoded
    """
    text = text.strip()
    fence = re.search(r"```(?:json)?\s*\n(\{[\s\S]*\})\s*\n```", text)
    candidates = [fence.group(1)] if fence else []
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    candidates.append(strip_markdown_fences(text))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("No JSON object found in reply")
