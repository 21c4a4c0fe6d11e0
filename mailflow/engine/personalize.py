"""Token substitution for message subjects and bodies."""

import re
from collections.abc import Mapping
from typing import Any

from mailflow.models.subscriber import Subscriber

_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


def subscriber_tokens(subscriber: Subscriber) -> dict[str, str]:
    """Built-in tokens derived from the subscriber profile."""
    return {
        "firstName": subscriber.first_name or "",
        "lastName": subscriber.last_name or "",
        "email": subscriber.email,
        "name": subscriber.first_name or subscriber.email or "there",
    }


def build_tokens(subscriber: Subscriber, trigger_data: Mapping[str, Any] | None = None) -> dict[str, str]:
    """Merge trigger data with subscriber tokens; subscriber tokens win."""
    tokens: dict[str, str] = {}
    for key, value in (trigger_data or {}).items():
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            tokens[str(key)] = str(value)
    tokens.update(subscriber_tokens(subscriber))
    return tokens


def personalize(content: str, tokens: Mapping[str, str]) -> str:
    """Replace ``{{token}}`` occurrences in one pass; unknown tokens stay as written."""
    if not content:
        return content

    def _replace(match: re.Match[str]) -> str:
        return tokens.get(match.group(1), match.group(0))

    return _TOKEN_PATTERN.sub(_replace, content)
