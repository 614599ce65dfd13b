"""
JSON utilities for model output: fence stripping, object location, and a
single bounded repair rule.
"""

from __future__ import annotations

import json
from typing import Any


def clean_json_response(response: str) -> str:
    """Remove ```json / ``` code block markers around a model reply."""
    response = response.strip()

    if response.startswith("```json"):
        response = response[7:]
    elif response.startswith("```"):
        response = response[3:]

    if response.endswith("```"):
        response = response[:-3]

    return response.strip()


def find_json_object(text: str) -> str | None:
    """Return the first balanced `{...}` span in text, or None.

    Braces inside JSON string literals do not count towards balance.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        # Unbalanced from this brace; try the next one.
        start = text.find("{", start + 1)
    return None


def strip_trailing_comma(text: str) -> str | None:
    """Remove the first comma that directly precedes a closing `}` or `]`.

    Only whitespace may sit between the comma and the bracket, and commas
    inside string literals are ignored. Returns None when there is nothing
    to strip.
    """
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < len(text) and text[j] in " \t\r\n":
                j += 1
            if j < len(text) and text[j] in "}]":
                return text[:i] + text[i + 1 :]
    return None


def loads_lenient(text: str) -> Any:
    """json.loads with exactly one repair attempt (one trailing comma).

    Raises json.JSONDecodeError when the text is still invalid.
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        repaired = strip_trailing_comma(text)
        if repaired is None:
            raise
        return json.loads(repaired)
