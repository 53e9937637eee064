from __future__ import annotations


class RentalEngineError(RuntimeError):
    pass


class NotFoundError(RentalEngineError):
    pass


class InvalidTransitionError(RentalEngineError):
    pass


class InsufficientStockError(RentalEngineError):
    def __init__(self, equipment_name: str, requested: int, available: int):
        self.equipment_name = equipment_name
        self.requested = requested
        self.available = max(available, 0)
        self.shortfall = requested - self.available
        super().__init__(
            f"Insufficient stock for {equipment_name}: requested {requested}, "
            f"available {self.available} (short by {self.shortfall})."
        )
