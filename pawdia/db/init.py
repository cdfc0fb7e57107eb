import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from pawdia.core.config import get_settings
from pawdia.models.account import Account
from pawdia.models.audit_log import AuditLog
from pawdia.models.credit_ledger import CreditLedgerEntry
from pawdia.models.generation_job import GenerationJob
from pawdia.models.payment_order import PaymentOrder

DOCUMENT_MODELS = [
    Account,
    CreditLedgerEntry,
    GenerationJob,
    PaymentOrder,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(client=None) -> None:
    """Bind Beanie to the configured database; `client` overrides the Motor client (tests)."""
    settings = get_settings()
    if client is None:
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)


async def ping_db() -> None:
    """Round-trip to the database bound by init_db; raises pymongo ConnectionFailure when unreachable."""
    await Account.get_motor_collection().database.command("ping")
