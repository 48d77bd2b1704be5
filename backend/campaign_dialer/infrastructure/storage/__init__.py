"""
Storage Package
Task store and billing ledger adapters
"""
from campaign_dialer.infrastructure.storage.memory import InMemoryBillingLedger, InMemoryTaskStore
from campaign_dialer.infrastructure.storage.supabase_billing_ledger import SupabaseBillingLedger
from campaign_dialer.infrastructure.storage.supabase_task_store import SupabaseTaskStore

__all__ = [
    "InMemoryTaskStore",
    "InMemoryBillingLedger",
    "SupabaseTaskStore",
    "SupabaseBillingLedger",
]
