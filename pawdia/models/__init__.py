from pawdia.models.account import Account
from pawdia.models.credit_ledger import CreditLedgerEntry
from pawdia.models.generation_job import GenerationJob
from pawdia.models.payment_order import PaymentOrder
from pawdia.models.audit_log import AuditLog

__all__ = [
    "Account",
    "CreditLedgerEntry",
    "GenerationJob",
    "PaymentOrder",
    "AuditLog",
]
