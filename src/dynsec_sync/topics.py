"""
Dynamic Security control topics.

Commands:  $CONTROL/dynamic-security/v1
Responses: $CONTROL/dynamic-security/v1/response
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_BASE_RE = re.compile(r"^\$CONTROL/[A-Za-z0-9_\-]+/v[0-9]+$")

DEFAULT_CONTROL_BASE = "$CONTROL/dynamic-security/v1"


class TopicSchemaError(ValueError):
    """Raised when a control topic base is not a $CONTROL plugin topic."""


@dataclass(frozen=True, slots=True)
class ControlTopics:
    """Command/response topic pair for one broker control plugin."""

    base: str = DEFAULT_CONTROL_BASE

    def __post_init__(self) -> None:
        if not isinstance(self.base, str) or not _BASE_RE.fullmatch(self.base):
            raise TopicSchemaError(
                f"control base '{self.base}' is invalid; expected $CONTROL/<plugin>/v<N>"
            )

    @property
    def command(self) -> str:
        return self.base

    @property
    def response(self) -> str:
        return f"{self.base}/response"
