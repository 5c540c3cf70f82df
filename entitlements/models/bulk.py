from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

RowStatus = Literal["ok", "skipped", "error"]


@dataclass(frozen=True, slots=True)
class BulkRowResult:
    key: str
    status: str  # ok|skipped|error
    code: str | None = None
    message: str = ""


@dataclass(slots=True)
class BulkReport:
    """Per-row outcome of a bulk operation.

    Rows fail independently; the operation itself only fails on errors
    that make every row moot (unknown target, no permission).
    """

    rows: list[BulkRowResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def ok(self, key: str, message: str = "") -> None:
        self.rows.append(BulkRowResult(key=key, status="ok", message=message))

    def skipped(self, key: str, message: str) -> None:
        self.rows.append(BulkRowResult(key=key, status="skipped", message=message))

    def error(self, key: str, code: str, message: str) -> None:
        self.rows.append(
            BulkRowResult(key=key, status="error", code=code, message=message)
        )

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.rows if r.status == "ok")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.rows if r.status == "error")
