"""
Error taxonomy for dispatch and settlement.

Expected conditions (missing rows, no drivers, gateway outages) travel back to
callers inside result objects carrying one of these errors; only programmer or
input errors such as `InvalidAmount` are raised at the caller.
"""


class FoodDashError(Exception):
    code = "ERROR"
    message = "Unexpected error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class OrderNotFound(FoodDashError):
    code = "ORDER_NOT_FOUND"
    message = "Order not found"


class DriverNotFound(FoodDashError):
    code = "DRIVER_NOT_FOUND"
    message = "Driver not found"


class RestaurantNotFound(FoodDashError):
    code = "RESTAURANT_NOT_FOUND"
    message = "Restaurant not found"


class NoDriversAvailable(FoodDashError):
    code = "NO_DRIVERS_AVAILABLE"
    message = "All drivers are currently busy. Please try again in a few minutes."


class AssignmentConflict(FoodDashError):
    code = "ASSIGNMENT_CONFLICT"
    message = "Order already has a driver assigned"


class OutOfServiceArea(FoodDashError):
    code = "OUT_OF_SERVICE_AREA"
    message = "Delivery address is outside the service range"


class InvalidAmount(FoodDashError, ValueError):
    code = "INVALID_AMOUNT"
    message = "Invalid monetary amount"


class GatewayFailure(FoodDashError):
    code = "GATEWAY_FAILURE"
    message = "External service call failed"


class RoutingError(GatewayFailure):
    code = "ROUTING_FAILURE"


class NotificationError(GatewayFailure):
    code = "NOTIFICATION_FAILURE"


class PayoutError(GatewayFailure):
    code = "PAYOUT_FAILURE"
