"""
Campaign Dialer
Runs waves of outbound calls for a campaign under its concurrency budget
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from campaign_dialer.core.config import ConfigManager
from campaign_dialer.domain.exceptions import (
    CampaignNotFoundError,
    DialerError,
    InvalidHandlingError,
    SwitchError,
    TaskNotFoundError,
)
from campaign_dialer.domain.interfaces.notification_bus import NotificationBus
from campaign_dialer.domain.interfaces.switch_control_port import SwitchControlPort
from campaign_dialer.domain.interfaces.task_store import CampaignStore, TaskStore
from campaign_dialer.domain.models.campaign import Campaign, DefaultHandling
from campaign_dialer.domain.models.campaign_task import (
    OUTCOME_STATUS,
    CallOutcome,
    CampaignTask,
    ClaimResult,
    HandledBy,
    TaskStatus,
)
from campaign_dialer.domain.models.notification import Notification, NotificationKind
from campaign_dialer.domain.models.switch_event import OriginateRequest
from campaign_dialer.domain.services.billing_emitter import BillingEmitter
from campaign_dialer.domain.services.concurrency_limiter import ConcurrencyLimiter
from campaign_dialer.domain.services.event_correlator import CorrelationEntry, EventCorrelator

logger = logging.getLogger(__name__)


@dataclass
class WaveResult:
    """Summary of one pass over a campaign's pending tasks."""
    campaign_id: str
    dispatched: int = 0
    claimed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def record(self, outcome: Optional[CallOutcome]) -> None:
        if outcome is None:
            return
        self.claimed += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1


class CampaignDialer:
    """
    Orchestrates dialing for campaigns.

    Per task:
    1. Claim it (pending -> calling), skipping it if the campaign is no
       longer active or another wave got there first
    2. Register a correlation entry, then originate through the switch
    3. Wait (bounded) for the dial outcome; on answer, bill the outbound
       leg, notify consoles and apply automatic handling, then wait for
       the connection to end
    4. Settle failed attempts into retry-pending or failed
    5. Hold the slot for the campaign's wrap-up time
    """

    HANDLING_FOR_DEFAULT = {
        DefaultHandling.AI: HandledBy.AI,
        DefaultHandling.HUMAN: HandledBy.HUMAN,
    }

    def __init__(
        self,
        task_store: TaskStore,
        campaign_store: CampaignStore,
        switch: SwitchControlPort,
        correlator: EventCorrelator,
        billing: BillingEmitter,
        notifications: NotificationBus,
        config: Optional[ConfigManager] = None,
        grace_seconds: float = 60.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        handle_factory: Optional[Callable[[CampaignTask], str]] = None,
    ):
        self._task_store = task_store
        self._campaign_store = campaign_store
        self._switch = switch
        self._correlator = correlator
        self._billing = billing
        self._notifications = notifications
        self._config = config or ConfigManager()
        self._grace_seconds = grace_seconds
        self._clock = clock
        self._handle_factory = handle_factory or (
            lambda task: f"campaign-{task.id}-{uuid.uuid4().hex[:12]}"
        )
        self._limiters: Dict[str, ConcurrencyLimiter] = {}

        # Stats
        self._calls_originated = 0
        self._calls_answered = 0
        self._originate_failures = 0

    # ------------------------------------------------------------------
    # Waves
    # ------------------------------------------------------------------

    async def run_wave(self, campaign_id: str) -> WaveResult:
        """
        Dial every task currently pending for the campaign.

        Tasks are admitted in creation order; they finish in whatever
        order their calls end.
        """
        campaign = await self._campaign_store.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)

        result = WaveResult(campaign_id=campaign_id)
        tasks = await self._task_store.list_tasks(campaign_id, [TaskStatus.PENDING])
        if not tasks:
            logger.info(f"No pending tasks for campaign {campaign.name}")
            return result

        limiter = self._limiter_for(campaign)
        result.dispatched = len(tasks)
        logger.info(
            f"Starting wave for campaign {campaign.name}: {len(tasks)} tasks, "
            f"concurrency={limiter.max_concurrent}"
        )

        outcomes = await asyncio.gather(
            *(limiter.submit(self._run_task, task) for task in tasks),
            return_exceptions=True
        )

        for task, outcome in zip(tasks, outcomes):
            if isinstance(outcome, BaseException):
                result.errors += 1
                logger.error(f"Task execution error [{task.target_number}]: {outcome}")
            else:
                result.record(outcome)

        logger.info(
            f"Wave finished for campaign {campaign.name}: claimed={result.claimed} "
            f"outcomes={result.outcomes} errors={result.errors}"
        )
        return result

    def _limiter_for(self, campaign: Campaign) -> ConcurrencyLimiter:
        limiter = self._limiters.get(campaign.id)
        budget_changed = limiter is not None and limiter.max_concurrent != campaign.max_concurrent_calls
        if limiter is None or (budget_changed and limiter.active == 0 and limiter.waiting == 0):
            limiter = ConcurrencyLimiter(campaign.max_concurrent_calls)
            self._limiters[campaign.id] = limiter
        return limiter

    def get_limiter(self, campaign_id: str) -> Optional[ConcurrencyLimiter]:
        return self._limiters.get(campaign_id)

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    async def _run_task(self, task: CampaignTask) -> Optional[CallOutcome]:
        campaign = await self._campaign_store.get_campaign(task.campaign_id)
        if campaign is None or not campaign.is_active:
            logger.info(f"Campaign {task.campaign_id} is no longer active, skipping task {task.id}")
            return None

        handle = self._handle_factory(task)
        claim = await self._task_store.claim_task(task, handle, self._clock())
        if claim != ClaimResult.CLAIMED:
            logger.debug(f"Task {task.id} not claimed: {claim.value}")
            return None

        logger.info(f"Campaign dial [{task.id}]: {task.display} (attempt {task.attempts + 1}/{task.max_attempts})")

        entry = self._correlator.register(handle, task.id, campaign.id)
        try:
            outcome, detail = await self._attempt(task, campaign, entry)
        except Exception as e:
            logger.error(f"Dial attempt failed for task {task.id}: {e}", exc_info=True)
            outcome, detail = CallOutcome.ERROR, str(e)
        finally:
            self._correlator.unregister(handle)

        if outcome != CallOutcome.ANSWERED:
            await self._settle_unanswered(task, campaign, outcome, detail)

        if campaign.wrapup_time > 0:
            await asyncio.sleep(campaign.wrapup_time)

        return outcome

    async def _attempt(
        self,
        task: CampaignTask,
        campaign: Campaign,
        entry: CorrelationEntry
    ) -> Tuple[CallOutcome, str]:
        request = self.build_originate_request(task, campaign, entry.handle)
        try:
            await self._switch.originate(request)
            self._calls_originated += 1
        except SwitchError as e:
            self._originate_failures += 1
            logger.warning(f"Originate failed for task {task.id}: {e}")
            return CallOutcome.ERROR, "originate_failed"

        loop = asyncio.get_running_loop()
        timeout = campaign.correlation_timeout(self._grace_seconds)
        deadline = loop.time() + timeout

        outcome = await self._correlator.wait_for_outcome(entry, timeout)
        if entry.timed_out:
            return outcome, "timeout"

        if outcome == CallOutcome.ANSWERED:
            await self._on_answered(task, campaign, entry)

        # The slot is held until the connection is gone
        ended = await self._correlator.wait_for_end(entry, deadline - loop.time())
        if ended and outcome == CallOutcome.ANSWERED:
            # Legs opened after the end event was processed are closed here
            await self._billing.finalize_open_legs(task.id, ended_at=entry.ended_at)
        return outcome, outcome.value

    def build_originate_request(self, task: CampaignTask, campaign: Campaign, handle: str) -> OriginateRequest:
        """Channel, context and caller-ID for one attempt."""
        if campaign.sip_trunk:
            channel = f"SIP/{campaign.sip_trunk}/{task.target_number}"
        else:
            local = self._config.get_context("local_outbound")
            channel = f"Local/{task.target_number}@{local}"

        variables = {
            "CAMPAIGN_TASK_ID": task.id,
            "CAMPAIGN_ID": campaign.id,
        }
        if campaign.dtmf:
            context = self._config.get_context("dtmf", campaign_id=campaign.id)
            variables.update({
                "DTMF_KEY": campaign.dtmf.trigger_key,
                "DTMF_TIMEOUT": str(campaign.dtmf.timeout_seconds),
                "DTMF_MAX_REPLAYS": str(campaign.dtmf.max_replays),
                "DTMF_TARGET_TYPE": campaign.dtmf.transfer_type.value,
                "DTMF_TARGET": campaign.dtmf.transfer_target or "",
            })
            if campaign.dtmf.prompt_audio_id:
                variables["DTMF_PROMPT"] = campaign.dtmf.prompt_audio_id
        else:
            context = self._config.get_context("hold")

        return OriginateRequest(
            channel=channel,
            context=context,
            caller_id=self.caller_id_for(task, campaign),
            correlation_handle=handle,
            timeout_seconds=campaign.max_wait_time,
            variables=variables,
        )

    def caller_id_for(self, task: CampaignTask, campaign: Campaign) -> str:
        name = task.contact_name or self._config.get("dialer.default_caller_name", "Campaign")
        number = self._caller_number(campaign)
        if not number:
            return f'"{name}"'
        return f'"{name}" <{number}>'

    @staticmethod
    def _caller_number(campaign: Campaign) -> str:
        return campaign.caller_id_override or campaign.operator_extension or ""

    async def _on_answered(self, task: CampaignTask, campaign: Campaign, entry: CorrelationEntry) -> None:
        answered = await self._task_store.transition_task(
            task.id,
            TaskStatus.CALLING,
            TaskStatus.ANSWERED,
            call_result_detail=CallOutcome.ANSWERED.value,
            answered_at=self._clock(),
        )
        if answered is None:
            logger.info(f"Task {task.id} left calling state before answer was recorded")
            return

        self._calls_answered += 1
        logger.info(f"Call answered: task={task.id} contact={task.display}")

        await self._billing.open_outbound_leg(answered, campaign, self._caller_number(campaign))
        await self._notifications.publish(Notification(
            kind=NotificationKind.CALL_ANSWERED,
            campaign_id=campaign.id,
            task_id=task.id,
            payload={
                "campaign_name": campaign.name,
                "contact_name": answered.contact_name,
                "contact_number": answered.target_number,
                "correlation_handle": entry.handle,
                "channel_id": answered.channel_id,
                "connection_id": answered.connection_id,
                "default_handling": campaign.default_handling.value,
                "ai_flow_id": campaign.ai_flow_id,
            },
        ))

        if not campaign.handles_automatically:
            return
        handling = self.HANDLING_FOR_DEFAULT[campaign.default_handling]
        try:
            await self.handle_answered(task.id, handling)
        except (DialerError, SwitchError) as e:
            logger.warning(f"Automatic {handling.value} handling failed for task {task.id}: {e}")

    async def _settle_unanswered(
        self,
        task: CampaignTask,
        campaign: Campaign,
        outcome: CallOutcome,
        detail: str
    ) -> None:
        status = OUTCOME_STATUS[outcome]
        settled = await self._task_store.transition_task(
            task.id, TaskStatus.CALLING, status, call_result_detail=detail
        )
        if settled is None:
            logger.info(f"Task {task.id} left calling state externally; not retrying")
            return

        if settled.has_attempts_left:
            next_attempt_at = settled.retry_time(campaign.retry_interval, self._clock())
            await self._task_store.transition_task(
                task.id,
                status,
                TaskStatus.RETRY_PENDING,
                next_attempt_at=next_attempt_at,
                result=detail,
            )
            logger.info(f"Retry scheduled: {task.target_number} ({detail}) at {next_attempt_at.isoformat()}")
        else:
            await self._task_store.transition_task(
                task.id,
                status,
                TaskStatus.FAILED,
                result=f"max_attempts: {detail}",
            )
            logger.info(f"Max attempts reached: {task.target_number} ({detail})")

    # ------------------------------------------------------------------
    # Post-answer handling
    # ------------------------------------------------------------------

    async def handle_answered(
        self,
        task_id: str,
        handling: HandledBy,
        extension: Optional[str] = None,
        flow_id: Optional[str] = None
    ) -> CampaignTask:
        """
        Route an answered call.

        - ai: redirect into the automated voice-flow context
        - human: transfer to `extension` if given, otherwise park the call
          in the campaign's human queue
        - queue: park the call and broadcast it to every agent console
        """
        task, campaign = await self._load(task_id)
        if task.status != TaskStatus.ANSWERED:
            raise InvalidHandlingError(f"Task {task_id} is {task.status.value}, not answered")
        if not task.channel_id:
            raise InvalidHandlingError(f"Task {task_id} has no established channel yet")

        broadcast = False
        if handling == HandledBy.AI:
            flow = flow_id or campaign.ai_flow_id
            if not flow:
                raise InvalidHandlingError("flow_id required for AI routing")
            destination = self._config.get_context("ai_flow", flow_id=flow)
            await self._switch.redirect(task.channel_id, destination, "s", 1)
            target = TaskStatus.AI_HANDLED
        elif handling == HandledBy.HUMAN and extension:
            destination = extension
            await self._switch.redirect(
                task.channel_id, self._config.get_context("transfer"), extension, 1
            )
            target = TaskStatus.TRANSFERRED
        elif handling == HandledBy.HUMAN:
            destination = self._config.get_context("human_queue", campaign_id=campaign.id)
            await self._switch.redirect(task.channel_id, destination, "s", 1)
            target = TaskStatus.WAITING_AGENT
        elif handling == HandledBy.QUEUE:
            destination = self._config.get_context("queue_hold")
            await self._switch.redirect(task.channel_id, destination, "s", 1)
            target = TaskStatus.WAITING_AGENT
            broadcast = True
        else:
            raise InvalidHandlingError(f"Unknown handling type: {handling}")

        handled = await self._task_store.transition_task(
            task_id,
            TaskStatus.ANSWERED,
            target,
            handled_by=handling,
            transferred_to=destination,
        )
        if handled is None:
            raise InvalidHandlingError(f"Task {task_id} changed state while being handled")

        logger.info(f"Task {task_id} handled by {handling.value} -> {destination}")

        if target == TaskStatus.TRANSFERRED:
            await self._billing.open_inbound_leg(handled, campaign, destination)

        await self._publish_handled(handled, campaign, broadcast=broadcast)
        return handled

    async def accept_queued_call(self, task_id: str, extension: str) -> CampaignTask:
        """An agent picks up a parked call."""
        if not extension:
            raise InvalidHandlingError("extension required")
        task, campaign = await self._load(task_id)
        if task.status != TaskStatus.WAITING_AGENT:
            raise InvalidHandlingError(f"Task {task_id} is {task.status.value}, not waiting for an agent")

        await self._switch.redirect(task.channel_id, self._config.get_context("transfer"), extension, 1)
        accepted = await self._task_store.transition_task(
            task_id,
            TaskStatus.WAITING_AGENT,
            TaskStatus.TRANSFERRED,
            handled_by=HandledBy.HUMAN,
            transferred_to=extension,
        )
        if accepted is None:
            raise InvalidHandlingError(f"Task {task_id} was already picked up")

        logger.info(f"Queued call {task_id} accepted by extension {extension}")
        await self._billing.open_inbound_leg(accepted, campaign, extension)
        await self._publish_handled(accepted, campaign, broadcast=False)
        return accepted

    async def force_hangup(self, task_id: str) -> CampaignTask:
        """Hang up a task's connection and cancel the task if it is still open."""
        task, _ = await self._load(task_id)
        if task.channel_id:
            try:
                await self._switch.hangup(task.channel_id)
            except SwitchError as e:
                logger.warning(f"Hangup failed for task {task_id}: {e}")

        if task.is_terminal:
            return task

        cancelled = await self._task_store.transition_task(task_id, task.status, TaskStatus.CANCELLED)
        return cancelled or await self._task_store.get_task(task_id) or task

    async def _publish_handled(self, task: CampaignTask, campaign: Campaign, broadcast: bool) -> None:
        await self._notifications.publish(Notification(
            kind=NotificationKind.TASK_HANDLED,
            campaign_id=campaign.id,
            task_id=task.id,
            payload={
                "status": task.status.value,
                "handled_by": task.handled_by.value if task.handled_by else None,
                "destination": task.transferred_to,
                "contact_name": task.contact_name,
                "contact_number": task.target_number,
                "channel_id": task.channel_id,
                "broadcast": broadcast,
            },
        ))

    async def _load(self, task_id: str) -> Tuple[CampaignTask, Campaign]:
        task = await self._task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        campaign = await self._campaign_store.get_campaign(task.campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(task.campaign_id)
        return task, campaign

    def get_stats(self) -> dict:
        """Get dialer statistics."""
        return {
            "calls_originated": self._calls_originated,
            "calls_answered": self._calls_answered,
            "originate_failures": self._originate_failures,
            "correlation": self._correlator.get_stats(),
            "limiters": {cid: lim.get_stats() for cid, lim in self._limiters.items()},
        }
