from typing import Optional


class PointsEngineError(Exception):
    pass


class ValidationError(PointsEngineError):
    def __init__(self, message: str, details: Optional[list] = None):
        super().__init__(message)
        self.details = details or []


class NotFoundError(PointsEngineError):
    pass


class ForbiddenError(PointsEngineError):
    pass


class DuplicateSubmissionError(PointsEngineError):
    pass


class QuotaExceededError(PointsEngineError):
    def __init__(self, dimension: str, attempted: int, ceiling: int):
        super().__init__(
            f"{dimension} limit exceeded: {attempted} in the last 7 days, maximum allowed is {ceiling}"
        )
        self.dimension = dimension
        self.attempted = attempted
        self.ceiling = ceiling


class InvalidStateError(PointsEngineError):
    def __init__(self, current_status: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot transition from {current_status} state")
        self.current_status = current_status


class PointAdjustmentOutOfBoundsError(PointsEngineError):
    def __init__(self, base_points: int, point_override: int, max_adjustment: int):
        super().__init__(
            f"Point override {point_override} is outside {base_points} ± {max_adjustment}"
        )
        self.base_points = base_points
        self.point_override = point_override
        self.max_adjustment = max_adjustment


class DuplicateCreditError(PointsEngineError):
    """Raised by the ledger store when an idempotency key is already present.

    Never surfaced to callers; the engine converts it into a duplicate outcome.
    """

    def __init__(self, external_source: str, external_event_id: str):
        super().__init__(f"Ledger already holds {external_source}/{external_event_id}")
        self.external_source = external_source
        self.external_event_id = external_event_id


class AppendOnlyViolation(PointsEngineError):
    pass
