from __future__ import annotations

import base64
import re
from typing import Any, Iterable, List, Optional

PLACEHOLDER = "***"

# Credential values shorter than this are left unmasked.
MIN_SAMPLE_LENGTH = 3

# Keys whose values identify an account rather than unlock it.
SAFE_KEYS = frozenset(
    {
        "baseUrl",
        "database",
        "domain",
        "email",
        "host",
        "hostUrl",
        "instanceUrl",
        "loginUrl",
        "port",
        "scope",
        "token_type",
        "user",
        "username",
        "expires_at",
        "expires_in",
    }
)


def secret_values(body: Any) -> List[str]:
    """Collect leaf values of a credential body that must never be logged."""
    found: List[str] = []

    def walk(value: Any, key: Optional[str]) -> None:
        if isinstance(value, dict):
            for k, v in value.items():
                walk(v, str(k))
        elif isinstance(value, list):
            for item in value:
                walk(item, key)
        elif isinstance(value, bool) or value is None:
            return
        elif key not in SAFE_KEYS:
            text = str(value)
            if len(text) >= MIN_SAMPLE_LENGTH:
                found.append(text)

    walk(body, None)
    return found


def basic_auth_values(body: Any) -> List[str]:
    """Base64 ``user:password`` pairs a job could put in an Authorization header."""
    if not isinstance(body, dict):
        return []
    password = body.get("password", "")
    users = [body[k] for k in ("username", "email") if body.get(k)]
    return [
        base64.b64encode(f"{user}:{password}".encode()).decode()
        for user in users
    ]


class Scrubber:
    """Masks credential secrets in log text for the lifetime of one channel.

    Samples accumulate as the worker fetches more credentials; the longest
    ones are replaced first so a secret containing another is fully masked.
    """

    def __init__(self, samples: Iterable[str] = ()) -> None:
        self._samples: List[str] = []
        self._pattern: Optional[re.Pattern[str]] = None
        self.add_samples(samples)

    def add_samples(self, samples: Iterable[str], basic_auth: Iterable[str] = ()) -> None:
        merged = set(self._samples)
        merged.update(s for s in samples if s and len(s) >= MIN_SAMPLE_LENGTH)
        merged.update(s for s in basic_auth if s)
        self._samples = sorted(merged, key=len, reverse=True)
        if self._samples:
            self._pattern = re.compile("|".join(re.escape(s) for s in self._samples))
        else:
            self._pattern = None

    def add_credential(self, body: Any) -> None:
        self.add_samples(secret_values(body), basic_auth_values(body))

    @property
    def samples(self) -> List[str]:
        return list(self._samples)

    def scrub(self, text: str) -> str:
        if not text or self._pattern is None:
            return text
        return self._pattern.sub(PLACEHOLDER, text)
