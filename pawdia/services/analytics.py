"""Admin dashboard counters."""

from pawdia.models.account import Account
from pawdia.models.generation_job import GenerationJob
from pawdia.models.payment_order import PaymentOrder

GENERATION_STATUSES = ("charged", "succeeded", "refunded", "refund_failed")


async def stats() -> dict:
    total_accounts = await Account.find_all().count()
    admins = await Account.find(Account.role == "admin").count()
    credits_outstanding = await Account.find_all().sum(Account.credits)
    generations = {s: await GenerationJob.find(GenerationJob.status == s).count() for s in GENERATION_STATUSES}
    completed_orders = await PaymentOrder.find(PaymentOrder.status == "completed").to_list()
    revenue: dict[str, float] = {}
    for o in completed_orders:
        revenue[o.currency] = round(revenue.get(o.currency, 0.0) + float(o.amount), 2)
    return {
        "accounts": {"total": total_accounts, "admins": admins},
        "credits_outstanding": int(credits_outstanding or 0),
        "generations": generations,
        "payments": {"completed": len(completed_orders), "revenue": revenue},
    }
