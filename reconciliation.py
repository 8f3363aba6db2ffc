"""Balance arithmetic for transaction writes.

Every function takes the user's current balance in cents and returns the
balance after the write, or raises ``InsufficientBalance`` when the write may
not happen. Nothing here touches the database.
"""

from models import TransactionType
from errors import InsufficientBalance


def sign(txn_type: TransactionType) -> int:
    return 1 if txn_type == TransactionType.income else -1


def balance_after_create(
    balance_cents: int, txn_type: TransactionType, amount_cents: int
) -> int:
    new_balance = balance_cents + sign(txn_type) * amount_cents
    if txn_type == TransactionType.expense and new_balance < 0:
        raise InsufficientBalance(
            "Insufficient balance for this expense",
            details={"balance_cents": balance_cents, "amount_cents": amount_cents},
        )
    return new_balance


def balance_after_update(
    balance_cents: int,
    old_type: TransactionType,
    old_amount_cents: int,
    new_type: TransactionType,
    new_amount_cents: int,
) -> int:
    intermediate = balance_cents - sign(old_type) * old_amount_cents
    new_balance = intermediate + sign(new_type) * new_amount_cents
    if new_balance < 0:
        raise InsufficientBalance(
            "Insufficient balance for this transaction",
            details={"balance_cents": balance_cents, "amount_cents": new_amount_cents},
        )
    return new_balance


def balance_after_delete(
    balance_cents: int, txn_type: TransactionType, amount_cents: int
) -> int:
    # no lower bound: undoing an income may leave the balance negative
    return balance_cents - sign(txn_type) * amount_cents


# a direct adjustment follows the same rule as creating a transaction
balance_after_adjustment = balance_after_create
