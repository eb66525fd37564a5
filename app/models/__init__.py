from app.models.loan import Loan
from app.models.loan_contract import LoanContract
from app.models.loan_payment import LoanPayment
from app.models.outbox_message import OutboxMessage
from app.models.payment_transaction import PaymentTransaction
from app.models.user import User

__all__ = [
    "Loan",
    "LoanContract",
    "LoanPayment",
    "OutboxMessage",
    "PaymentTransaction",
    "User",
]
