from __future__ import annotations

from dataclasses import dataclass


class PipelineError(RuntimeError):
    pass


class UnsupportedFormat(PipelineError):
    pass


class CorruptDocument(PipelineError):
    pass


class ExtractionError(PipelineError):
    pass


@dataclass(frozen=True)
class Violation:
    item_id: str
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"item_id": self.item_id, "field": self.field, "message": self.message}


class ValidationError(ValueError):
    def __init__(self, violations: list[Violation]):
        self.violations = list(violations)
        summary = "; ".join(f"{v.item_id}.{v.field}: {v.message}" for v in self.violations[:5])
        if len(self.violations) > 5:
            summary += f" (+{len(self.violations) - 5} more)"
        super().__init__(summary or "Validation failed")


class PersistenceError(RuntimeError):
    pass
