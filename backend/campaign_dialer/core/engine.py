"""
Dialer Engine Assembly
Wires the dialing engine's components together
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from campaign_dialer.core.config import ConfigManager, Settings, get_settings
from campaign_dialer.domain.interfaces.billing_ledger import BillingLedger
from campaign_dialer.domain.interfaces.notification_bus import NotificationBus
from campaign_dialer.domain.interfaces.switch_control_port import SwitchControlPort
from campaign_dialer.domain.interfaces.task_store import CampaignStore, TaskStore
from campaign_dialer.domain.models.campaign_task import CampaignTask
from campaign_dialer.domain.services.billing_emitter import BillingEmitter
from campaign_dialer.domain.services.campaign_dialer import CampaignDialer
from campaign_dialer.domain.services.campaign_service import CampaignService
from campaign_dialer.domain.services.event_correlator import EventCorrelator
from campaign_dialer.domain.services.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)


@dataclass
class DialerEngine:
    """All engine components, built once per process"""
    campaign_store: CampaignStore
    task_store: TaskStore
    ledger: BillingLedger
    switch: SwitchControlPort
    notifications: NotificationBus
    billing: BillingEmitter
    correlator: EventCorrelator
    dialer: CampaignDialer
    scheduler: RetryScheduler
    service: CampaignService

    async def start(self) -> None:
        """Connect adapters and re-arm scheduled campaigns."""
        await self.notifications.initialize()
        await self.switch.connect()
        await self.service.rearm_scheduled()
        logger.info(f"Dialer engine started (switch={self.switch.name})")

    async def stop(self) -> None:
        """Stop campaign runners, then release adapters."""
        await self.service.shutdown()
        try:
            await self.switch.disconnect()
        except Exception as e:
            logger.error(f"Error disconnecting switch: {e}")
        await self.notifications.close()
        logger.info(f"Dialer engine stopped. Stats: {self.dialer.get_stats()}")


def build_engine(
    store,
    ledger: BillingLedger,
    switch: SwitchControlPort,
    notifications: NotificationBus,
    config: Optional[ConfigManager] = None,
    grace_seconds: float = 60.0,
    default_currency: str = "USD",
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    handle_factory: Optional[Callable[[CampaignTask], str]] = None,
) -> DialerEngine:
    """
    Build an engine around the given adapters.

    `store` must implement both CampaignStore and TaskStore. The correlator
    is subscribed to the switch's event stream here, exactly once.
    """
    config = config or ConfigManager()

    billing = BillingEmitter(ledger, clock=clock, default_currency=default_currency)
    correlator = EventCorrelator(
        store,
        billing,
        notifications,
        early_buffer_size=int(config.get("dialer.early_events.max_entries", 256)),
        early_buffer_age=float(config.get("dialer.early_events.max_age_seconds", 30)),
    )
    switch.subscribe(correlator.handle_event)

    dialer = CampaignDialer(
        task_store=store,
        campaign_store=store,
        switch=switch,
        correlator=correlator,
        billing=billing,
        notifications=notifications,
        config=config,
        grace_seconds=grace_seconds,
        clock=clock,
        handle_factory=handle_factory,
    )
    scheduler = RetryScheduler(dialer, store, store, notifications, clock=clock, sleep=sleep)
    service = CampaignService(store, store, dialer, scheduler, billing, notifications, clock=clock, sleep=sleep)

    return DialerEngine(
        campaign_store=store,
        task_store=store,
        ledger=ledger,
        switch=switch,
        notifications=notifications,
        billing=billing,
        correlator=correlator,
        dialer=dialer,
        scheduler=scheduler,
        service=service,
    )


def build_engine_from_settings(settings: Optional[Settings] = None) -> DialerEngine:
    """Production wiring: Supabase store and ledger, switch port by provider name, Redis bus."""
    from campaign_dialer.infrastructure.notifications.redis_notification_bus import RedisNotificationBus
    from campaign_dialer.infrastructure.storage.supabase_billing_ledger import SupabaseBillingLedger
    from campaign_dialer.infrastructure.storage.supabase_task_store import SupabaseTaskStore
    from campaign_dialer.infrastructure.telephony.factory import SwitchPortFactory

    settings = settings or get_settings()
    return build_engine(
        store=SupabaseTaskStore.from_settings(settings),
        ledger=SupabaseBillingLedger.from_settings(settings),
        switch=SwitchPortFactory.create(settings.switch_provider, settings),
        notifications=RedisNotificationBus.from_settings(settings),
        config=ConfigManager(env=settings.environment),
        grace_seconds=settings.correlation_grace_seconds,
        default_currency=settings.default_currency,
    )
