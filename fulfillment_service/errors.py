"""Exceptions raised by the fulfillment workflow."""


class FulfillmentError(Exception):
    """Base exception for all fulfillment errors.

    ``retryable`` tells the task runner whether redelivering the task can help.
    """

    retryable = False


class NotFoundError(FulfillmentError):
    """Raised when a referenced order, payment or product does not exist."""

    def __init__(self, entity: str, key: object):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key} not found")


class InvalidInputError(FulfillmentError):
    """Raised when an import group is malformed."""

    pass


class BusinessRuleViolation(FulfillmentError):
    """Raised when a request breaks a domain rule. Never retried."""

    pass


class InsufficientStockError(BusinessRuleViolation):
    """Raised inside a reservation to abort the whole transaction."""

    def __init__(self, sku: str, requested: int, available: int):
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for {sku}: requested {requested}, available {available}")


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when an order is asked to move to a status it cannot reach."""

    def __init__(self, order_id: int, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")


class PaymentAlreadyActiveError(BusinessRuleViolation):
    """Raised when an order already has a payment driving it forward."""

    def __init__(self, order_id: int, payment_id: int):
        self.order_id = order_id
        self.payment_id = payment_id
        super().__init__(f"Order {order_id} already has active payment {payment_id}")


class ReservationMismatchError(BusinessRuleViolation):
    """Raised when a commit finds less reserved than the order needs."""

    def __init__(self, order_id: int, sku: str, reserved: int, needed: int):
        self.order_id = order_id
        self.sku = sku
        super().__init__(f"Order {order_id} holds {reserved} of {needed} units of {sku}; cannot commit")


class PaymentInitiationError(FulfillmentError):
    """Raised after a reservation was compensated because payment could not start."""

    def __init__(self, order_id: int, reason: str):
        self.order_id = order_id
        super().__init__(f"Payment initiation failed for order {order_id}: {reason}")


class TransientInfraError(FulfillmentError):
    """Raised when lock contention or connectivity outlasts the retry budget."""

    retryable = True
