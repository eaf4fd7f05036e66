"""
Order lifecycle rules. Business status and payment status are independent axes:
any status may follow any other, only enum membership and the guards below apply.
"""
from marketplace.errors import Unauthorized

ORDER_STATUSES: tuple[str, ...] = (
    "pending",
    "confirmed",
    "in_progress",
    "completed",
    "cancelled",
    "refunded",
)

PAYMENT_STATUSES: tuple[str, ...] = (
    "pending",
    "paid",
    "failed",
    "refunded",
    "partially_refunded",
)

# Statuses an order can no longer be cancelled from
NON_CANCELLABLE: frozenset[str] = frozenset({"completed", "cancelled"})

# Statuses a checkout session may be opened for
PAYABLE: frozenset[str] = frozenset({"pending", "confirmed"})

# Timestamp field stamped when an order enters the status
STATUS_TIMESTAMPS: dict[str, str] = {
    "in_progress": "actualStartTime",
    "completed": "actualEndTime",
}

# "client" is what the payment webhook acts as; it is the same party as "customer"
CUSTOMER_ROLES: frozenset[str] = frozenset({"customer", "client"})


def is_valid_status(status: str) -> bool:
    return status in ORDER_STATUSES


def is_valid_payment_status(payment_status: str) -> bool:
    return payment_status in PAYMENT_STATUSES


def is_customer(actor_role: str) -> bool:
    return actor_role in CUSTOMER_ROLES


def ensure_order_access(order: dict, actor_id: str, actor_role: str, action: str = "update") -> None:
    """Customers act on their own orders, providers on orders for their services, admins on any."""
    if is_customer(actor_role) and order.get("customerId") != actor_id:
        raise Unauthorized(f"Unauthorized: You can only {action} your own orders")
    if actor_role == "provider" and order.get("providerId") != actor_id:
        raise Unauthorized(f"Unauthorized: You can only {action} orders for your services")
    if actor_role not in CUSTOMER_ROLES and actor_role not in ("provider", "admin"):
        raise Unauthorized(f"Unauthorized: role {actor_role!r} cannot {action} orders")


def can_cancel(status: str) -> bool:
    return status not in NON_CANCELLABLE


def is_payable(order: dict) -> bool:
    """True if a checkout session may be created for the order."""
    return order.get("status") in PAYABLE and order.get("paymentStatus") != "paid"
