import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from beanie import UpdateResponse
from pymongo import ASCENDING, DESCENDING

from donor_crm import config
from donor_crm.models.contact import Contact
from donor_crm.models.journey import Journey, JourneyNode
from donor_crm.models.journey_run import SCHEDULABLE_STATUSES, JourneyRun, RunHistoryEntry
from donor_crm.services.access import Caller, to_object_id
from donor_crm.services.delays import Clock, node_delay, utcnow
from donor_crm.services.errors import AuthorizationError, InvalidRequestError, NotFoundError
from donor_crm.services.notifications import DevNotificationSender, NotificationSender

logger = logging.getLogger(__name__)

MESSAGE_NODE_TYPES = ["email", "sms", "whatsapp"]


class JourneyExecutor:
    """
    Drives journey runs: enrollment, the single-step state machine and the due-run tick.
    All timestamps come from the injected clock so behaviour is reproducible in tests.
    """

    def __init__(
        self,
        sender: Optional[NotificationSender] = None,
        clock: Clock = utcnow,
        batch_size: int = config.JOURNEY_BATCH_SIZE,
        send_timeout: float = config.JOURNEY_SEND_TIMEOUT_SECONDS,
        max_consecutive_failures: int = config.JOURNEY_MAX_CONSECUTIVE_FAILURES,
        claim_timeout: timedelta = timedelta(minutes=config.JOURNEY_CLAIM_TIMEOUT_MINUTES),
    ):
        self.sender = sender or DevNotificationSender()
        self.clock = clock
        self.batch_size = batch_size
        self.send_timeout = send_timeout
        self.max_consecutive_failures = max_consecutive_failures
        self.claim_timeout = claim_timeout
        self.execution_id = str(uuid.uuid4())[:8]

    def _log_run(self, run: JourneyRun, message: str, level: str = "info", **kwargs):
        """Structured logging for run execution"""
        log_data = {
            "execution_id": self.execution_id,
            "journey_id": str(run.journey),
            "run_id": str(run.id),
            "message": message,
            **kwargs,
        }
        getattr(logger, level)(f"[RUN] {log_data}")

    # ------------------------------------------------------------------
    # Journey lifecycle
    # ------------------------------------------------------------------

    async def get_journey(self, journey_id: Any) -> Journey:
        object_id = to_object_id(journey_id)
        journey = await Journey.get(object_id) if object_id else None
        if not journey:
            raise NotFoundError("Journey not found")
        return journey

    async def set_status(self, journey_id: Any, status: str) -> Journey:
        journey = await self.get_journey(journey_id)
        old_status = journey.status
        journey.status = status
        journey.updated_at = self.clock()
        await journey.save()
        logger.info(f"[JOURNEY] Journey {journey.id} status change: {old_status} → {status}")
        return journey

    async def activate(self, journey_id: Any) -> Journey:
        return await self.set_status(journey_id, "active")

    async def deactivate(self, journey_id: Any) -> Journey:
        return await self.set_status(journey_id, "inactive")

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll(self, journey_id: Any, contact_ids: Optional[Iterable[Any]], caller: Caller) -> int:
        """
        Create one pending run per contact. Either every contact is enrolled or nothing is created.
        Returns the number of runs created.
        """
        if not contact_ids:
            raise InvalidRequestError("Provide contacts array")

        unique_ids: List[str] = []
        for contact_id in contact_ids:
            if contact_id and str(contact_id) not in unique_ids:
                unique_ids.append(str(contact_id))
        if not unique_ids:
            raise InvalidRequestError("Provide contacts array")

        journey = await self.get_journey(journey_id)
        if journey.status != "active":
            raise InvalidRequestError("Journey must be active to enroll")

        if not caller.can_access(journey.organization):
            logger.warning(
                f"[ENROLL] Caller {caller.user_id} (org {caller.organization_id}) "
                f"refused enrollment into journey {journey.id} (org {journey.organization})"
            )
            raise AuthorizationError("Not authorized to enroll into this journey")

        object_ids = {contact_id: to_object_id(contact_id) for contact_id in unique_ids}
        valid_object_ids = [oid for oid in object_ids.values() if oid is not None]
        found = await Contact.find({"_id": {"$in": valid_object_ids}}).to_list() if valid_object_ids else []
        found_ids = {str(contact.id) for contact in found}
        invalid = [contact_id for contact_id, oid in object_ids.items() if oid is None or str(oid) not in found_ids]
        if invalid:
            raise InvalidRequestError(f"Invalid contact IDs: {','.join(invalid)}", invalid_ids=invalid)

        now = self.clock()
        first_node = journey.first_node
        # With no nodes the run is created without a cursor and is never picked up by the scheduler.
        current_node_id = first_node.id if first_node else None
        scheduled_at = now + node_delay(first_node) if first_node else None

        runs = [
            JourneyRun(
                journey=journey.id,
                contact=object_ids[contact_id],
                organization=journey.organization,
                status="pending",
                current_node_id=current_node_id,
                scheduled_at=scheduled_at,
                created_at=now,
                updated_at=now,
            )
            for contact_id in unique_ids
        ]
        await JourneyRun.insert_many(runs)

        logger.info(
            f"[ENROLL] Enrolled {len(runs)} contacts into journey {journey.id}, "
            f"first node: {current_node_id}, scheduled at: {scheduled_at}"
        )
        return len(runs)

    async def get_runs(self, journey_id: Any) -> List[JourneyRun]:
        journey = await self.get_journey(journey_id)
        return await JourneyRun.find(JourneyRun.journey == journey.id).sort(
            [("created_at", DESCENDING)]
        ).to_list()

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    async def step(self, run: JourneyRun, journey: Optional[Journey]) -> JourneyRun:
        """
        Advance a due run by exactly one node. Mutates `run` in place; the caller persists it.
        """
        now = self.clock()
        run.updated_at = now

        if journey is None or journey.status != "active":
            self._log_run(run, "Journey is not active, stopping run", level="info",
                          journey_status=journey.status if journey else None)
            run.status = "stopped"
            run.scheduled_at = None
            run.claimed_at = None
            return run

        node = journey.find_node(run.current_node_id)
        if node is None:
            self._log_run(run, f"Current node {run.current_node_id} no longer in journey, completing run",
                          level="warning")
            run.finish("completed")
            return run

        self._log_run(run, f"Executing node {node.id} of type {node.type}", node_id=node.id, node_type=node.type)
        result = await self._execute_node(node, run)
        run.history.append(
            RunHistoryEntry(node_id=node.id, node_type=node.type, executed_at=now, result=result)
        )
        run.last_executed_at = now

        if result.get("ok"):
            run.consecutive_failures = 0
        else:
            run.consecutive_failures += 1
            if self.max_consecutive_failures and run.consecutive_failures >= self.max_consecutive_failures:
                self._log_run(run, f"Halting after {run.consecutive_failures} consecutive failures",
                              level="error", last_error=result.get("error"))
                run.finish("error")
                return run

        next_node = journey.next_node(node.id)
        if next_node is None:
            self._log_run(run, "Last node executed, run completed")
            run.finish("completed")
            return run

        run.current_node_id = next_node.id
        run.scheduled_at = now + node_delay(next_node)
        run.status = "running"
        run.claimed_at = None
        self._log_run(run, f"Advanced to node {next_node.id}", scheduled_at=str(run.scheduled_at))
        return run

    async def _execute_node(self, node: JourneyNode, run: JourneyRun) -> Dict[str, Any]:
        node_type = (node.type or "").lower()
        data = node.data or {}

        if node_type == "condition":
            # Branching is not evaluated yet; the condition is recorded and the run moves on.
            return {
                "ok": True,
                "condition": {"type": data.get("conditionType"), "value": data.get("conditionValue")},
            }

        if node_type not in MESSAGE_NODE_TYPES:
            return {"ok": True, "skipped": True, "reason": f"no action for node type {node.type}"}

        try:
            contact = await Contact.get(run.contact)
            if node_type == "email":
                return await self._send_email(contact, data)
            return await self._send_message(node_type, contact, data)
        except asyncio.TimeoutError:
            self._log_run(run, f"Send timed out on node {node.id}", level="error")
            return {"ok": False, "error": f"send timed out after {self.send_timeout}s"}
        except Exception as e:
            self._log_run(run, f"Send failed on node {node.id}: {e}", level="error")
            return {"ok": False, "error": str(e)}

    async def _send_email(self, contact: Optional[Contact], data: Dict[str, Any]) -> Dict[str, Any]:
        to = contact.email if contact else None
        if not to:
            return {"ok": True, "skipped": True, "reason": "no email address"}
        subject = data.get("subject") or data.get("title") or "Email"
        content = data.get("content") or data.get("subtitle") or ""
        outcome = await asyncio.wait_for(
            self.sender.send_email(to=to, subject=subject, html=content, text=content),
            timeout=self.send_timeout,
        )
        return {"ok": True, "channel": "email", "to": to, "outcome": outcome}

    async def _send_message(self, channel: str, contact: Optional[Contact], data: Dict[str, Any]) -> Dict[str, Any]:
        if contact is None:
            to = None
        elif channel == "whatsapp":
            to = contact.whatsapp or contact.phone or contact.mobile
        else:
            to = contact.phone or contact.mobile
        if not to:
            return {"ok": True, "skipped": True, "reason": f"no {channel} number"}

        body = data.get("content") or data.get("subtitle") or data.get("title") or ""
        send = self.sender.send_whatsapp if channel == "whatsapp" else self.sender.send_sms
        outcome = await asyncio.wait_for(send(to=to, body=body), timeout=self.send_timeout)
        return {"ok": True, "channel": channel, "to": to, "outcome": outcome}

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def claim(self, run: JourneyRun, now: datetime) -> Optional[JourneyRun]:
        """
        Move a due run into "claimed" unless another process got there first.
        Returns the claimed document, or None when the run is no longer due and schedulable.
        """
        return await JourneyRun.find_one(
            {"_id": run.id, "status": {"$in": SCHEDULABLE_STATUSES}, "scheduled_at": {"$lte": now}}
        ).update(
            {"$set": {"status": "claimed", "claimed_at": now}},
            response_type=UpdateResponse.NEW_DOCUMENT,
        )

    async def process_run(self, run: JourneyRun, journeys: Dict[Any, Optional[Journey]]) -> bool:
        now = self.clock()
        claimed = await self.claim(run, now)
        if claimed is None:
            self._log_run(run, "Run already claimed or no longer due, skipping", level="info")
            return False

        if claimed.journey not in journeys:
            journeys[claimed.journey] = await Journey.get(claimed.journey)

        await self.step(claimed, journeys[claimed.journey])
        await claimed.save()
        return True

    async def find_due_runs(self) -> List[JourneyRun]:
        now = self.clock()
        return await JourneyRun.find(
            {"status": {"$in": SCHEDULABLE_STATUSES}, "scheduled_at": {"$lte": now}}
        ).sort([("scheduled_at", ASCENDING)]).limit(self.batch_size).to_list()

    async def tick(self) -> int:
        """Process one batch of due runs, one after the other. Returns how many were advanced."""
        due_runs = await self.find_due_runs()
        if not due_runs:
            logger.debug("[TICK] No due runs")
            return 0

        logger.info(f"[TICK] {len(due_runs)} due runs (batch size {self.batch_size})")
        journeys: Dict[Any, Optional[Journey]] = {}
        processed = 0
        for run in due_runs:
            try:
                if await self.process_run(run, journeys):
                    processed += 1
            except Exception as e:
                logger.error(f"[TICK] Failed to process run {run.id}: {e}", exc_info=True)

        logger.info(f"[TICK] Processed {processed}/{len(due_runs)} runs")
        return processed

    async def release_stale_claims(self, older_than: Optional[timedelta] = None) -> int:
        """Hand runs stuck in "claimed" (their process died mid-step) back to the scheduler."""
        cutoff = self.clock() - (older_than or self.claim_timeout)
        result = await JourneyRun.find(
            {"status": "claimed", "claimed_at": {"$lt": cutoff}}
        ).update({"$set": {"status": "running", "claimed_at": None}})
        released = result.modified_count if result is not None else 0
        if released:
            logger.warning(f"[RECOVERY] Released {released} stale claimed runs (claimed before {cutoff})")
        return released
