from typing import List

from pydantic import BaseModel

from models.errors import EngineError


class SweepItemError(BaseModel):
    entity_id: str
    code: str
    message: str


class SweepResult(BaseModel):
    """Outcome of one sweep: transitions made and per-item failures."""
    processed: int = 0
    entity_ids: List[str] = []
    errors: List[SweepItemError] = []

    def record(self, entity_id: str) -> None:
        self.processed += 1
        self.entity_ids.append(entity_id)

    def record_error(self, entity_id: str, error: Exception) -> None:
        code = error.code if isinstance(error, EngineError) else "internal_error"
        self.errors.append(SweepItemError(entity_id=entity_id, code=code, message=str(error)))

    def merge(self, other: "SweepResult") -> "SweepResult":
        return SweepResult(
            processed=self.processed + other.processed,
            entity_ids=self.entity_ids + other.entity_ids,
            errors=self.errors + other.errors,
        )
