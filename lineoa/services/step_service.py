"""Step service - drip scenarios: starting executions and advancing them on schedule."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from database.db import ChannelScope, Database
from database.models import Channel, LineUser, LineUserTag, StepExecution, StepMessage, StepScenario, Tag
from lineoa.errors import NotFoundError, ValidationError
from lineoa.services.line_client import LineApiError, LineGateway
from lineoa.utils.content_blocks import build_messages, parse_blocks
from lineoa.utils.datetime_utils import calculate_next_send_at, utcnow

logger = logging.getLogger(__name__)

TRIGGER_FOLLOW = "follow"
TRIGGER_TAG_ASSIGNED = "tag_assigned"


@dataclass(frozen=True)
class StartResult:
    created: int
    skipped: int
    missing: int = 0

    @property
    def message(self) -> str:
        text = f"Started the scenario for {self.created} user(s); skipped {self.skipped} already in progress"
        if self.missing:
            text += f"; {self.missing} user(s) not found in this channel"
        return text


class StepService:
    def __init__(self, database: Database, gateway: LineGateway, *, tz: ZoneInfo, page_size: int = 50):
        self.database = database
        self.gateway = gateway
        self.tz = tz
        self.page_size = int(page_size)

    def next_send_at(self, step: StepMessage, trigger_at: datetime) -> datetime:
        return calculate_next_send_at(trigger_at, step.delay_minutes, step.send_hour, step.send_minute, self.tz)

    # ========== Starting ==========

    async def start_scenario(
        self,
        scenario_id: int,
        user_id: int,
        *,
        start_step: int = 1,
        now: datetime | None = None,
    ) -> bool:
        """
        Create an active execution unless (scenario, user) already has one.

        Returns:
            True if a new execution was created
        """
        now = now or utcnow()
        try:
            async with self.database.session() as session:
                scenario = await session.get(StepScenario, int(scenario_id))
                user = await session.get(LineUser, int(user_id))
                if scenario is None or user is None:
                    logger.warning(f"Cannot start scenario {scenario_id} for user {user_id}: not found")
                    return False
                if scenario.channel_id != user.channel_id:
                    logger.warning(f"Scenario {scenario_id} and user {user_id} belong to different channels")
                    return False

                step = (
                    await session.execute(
                        select(StepMessage).where(
                            StepMessage.scenario_id == int(scenario_id),
                            StepMessage.step_order == int(start_step),
                        )
                    )
                ).scalar_one_or_none()
                if step is None:
                    logger.warning(f"Scenario {scenario_id} has no step {start_step}; not started for user {user_id}")
                    return False

                existing = await session.execute(
                    select(StepExecution.id)
                    .where(
                        StepExecution.scenario_id == int(scenario_id),
                        StepExecution.line_user_id == int(user_id),
                        StepExecution.status == "active",
                    )
                    .limit(1)
                )
                if existing.scalar_one_or_none() is not None:
                    return False

                session.add(
                    StepExecution(
                        scenario_id=int(scenario_id),
                        line_user_id=int(user_id),
                        current_step=int(start_step),
                        status="active",
                        next_send_at=self.next_send_at(step, now),
                        started_at=now,
                    )
                )
                await session.flush()
        except IntegrityError:
            # Lost a race against a concurrent start; the other execution stands.
            logger.info(f"Scenario {scenario_id} already active for user {user_id}")
            return False

        logger.info(f"Scenario {scenario_id} started for user {user_id} at step {start_step}")
        return True

    async def _start_for_trigger(self, channel_id: int, user_id: int, *conditions) -> StartResult:
        async with self.database.session() as session:
            result = await session.execute(
                select(StepScenario.id)
                .where(StepScenario.channel_id == int(channel_id), StepScenario.is_active.is_(True), *conditions)
                .order_by(StepScenario.id.asc())
            )
            scenario_ids = [int(r[0]) for r in result.all()]

        created = skipped = 0
        for scenario_id in scenario_ids:
            try:
                if await self.start_scenario(scenario_id, user_id):
                    created += 1
                else:
                    skipped += 1
            except Exception as e:
                skipped += 1
                logger.error(f"Starting scenario {scenario_id} for user {user_id} failed: {e}", exc_info=True)
        return StartResult(created=created, skipped=skipped)

    async def start_for_follow(self, channel_id: int, user_id: int) -> StartResult:
        return await self._start_for_trigger(channel_id, user_id, StepScenario.trigger_type == TRIGGER_FOLLOW)

    async def start_for_tag_assigned(self, channel_id: int, user_id: int, tag_id: int) -> StartResult:
        return await self._start_for_trigger(
            channel_id,
            user_id,
            StepScenario.trigger_type == TRIGGER_TAG_ASSIGNED,
            StepScenario.trigger_tag_id == int(tag_id),
        )

    async def start_manual(
        self,
        scope: ChannelScope,
        *,
        scenario_id: int,
        start_step: int = 1,
        target_type: str,
        user_ids: Iterable[int] | None = None,
        tag_id: int | None = None,
        now: datetime | None = None,
    ) -> StartResult:
        """
        Operator bulk start against explicit users or a tag's members.

        Raises:
            NotFoundError: scenario or tag not in this channel
            ValidationError: bad target selection or missing start step
        """
        now = now or utcnow()
        start_step = int(start_step or 1)
        if target_type not in ("users", "tag"):
            raise ValidationError("targetType must be 'users' or 'tag'")

        async with scope.session() as session:
            scenario = await scope.get(session, StepScenario, scenario_id)
            if scenario is None:
                raise NotFoundError(f"Scenario {scenario_id} not found")
            step = (
                await session.execute(
                    select(StepMessage.id).where(
                        StepMessage.scenario_id == int(scenario.id),
                        StepMessage.step_order == start_step,
                    )
                )
            ).scalar_one_or_none()
            if step is None:
                raise ValidationError(f"Step {start_step} does not exist in scenario '{scenario.name}'")

            if target_type == "users":
                requested = []
                for raw in user_ids or []:
                    try:
                        requested.append(int(raw))
                    except (TypeError, ValueError):
                        raise ValidationError(f"Invalid user id: {raw!r}")
                requested = list(dict.fromkeys(requested))
                if not requested:
                    raise ValidationError("userIds is required when targetType is 'users'")
                result = await session.execute(
                    select(LineUser.id).where(LineUser.channel_id == scope.channel_id, LineUser.id.in_(requested))
                )
                targets = [int(r[0]) for r in result.all()]
                missing = len(requested) - len(targets)
            else:
                if tag_id is None:
                    raise ValidationError("tagId is required when targetType is 'tag'")
                tag = await scope.get(session, Tag, tag_id)
                if tag is None:
                    raise NotFoundError(f"Tag {tag_id} not found")
                result = await session.execute(
                    select(LineUserTag.line_user_id).where(LineUserTag.tag_id == int(tag.id)).order_by(LineUserTag.line_user_id)
                )
                targets = [int(r[0]) for r in result.all()]
                missing = 0
                if not targets:
                    raise ValidationError(f"No users hold the tag '{tag.name}'")

        created = skipped = 0
        for user_id in targets:
            if await self.start_scenario(int(scenario_id), user_id, start_step=start_step, now=now):
                created += 1
            else:
                skipped += 1

        result = StartResult(created=created, skipped=skipped, missing=missing)
        logger.info(f"Manual start of scenario {scenario_id} (channel {scope.channel_id}): {result.message}")
        return result

    # ========== Advancing ==========

    async def advance_due(self, *, now: datetime | None = None) -> int:
        """
        Send and advance up to one page of due executions.

        Returns:
            Number of executions this run advanced or completed
        """
        now = now or utcnow()
        async with self.database.session() as session:
            result = await session.execute(
                select(StepExecution.id)
                .where(StepExecution.status == "active", StepExecution.next_send_at <= now)
                .order_by(StepExecution.next_send_at.asc(), StepExecution.id.asc())
                .limit(self.page_size)
            )
            due_ids = [int(r[0]) for r in result.all()]

        processed = 0
        for execution_id in due_ids:
            try:
                if await self._advance_one(execution_id, now):
                    processed += 1
            except Exception as e:
                logger.error(f"Step execution {execution_id} failed to advance: {e}", exc_info=True)
        if processed:
            logger.info(f"Step sweep advanced {processed} execution(s)")
        return processed

    async def _advance_one(self, execution_id: int, now: datetime) -> bool:
        async with self.database.session() as session:
            execution = await session.get(StepExecution, int(execution_id))
            if execution is None or execution.status != "active" or execution.next_send_at is None or execution.next_send_at > now:
                return False
            observed_step = int(execution.current_step)
            observed_due = execution.next_send_at

            scenario = await session.get(StepScenario, int(execution.scenario_id))
            user = await session.get(LineUser, int(execution.line_user_id))
            steps = {}
            if scenario is not None:
                rows = await session.execute(select(StepMessage).where(StepMessage.scenario_id == int(scenario.id)))
                steps = {int(s.step_order): s for s in rows.scalars().all()}
            current = steps.get(observed_step)
            following = steps.get(observed_step + 1)

            if current is None or user is None:
                values = {"status": "completed", "completed_at": now}
                logger.warning(f"Step execution {execution_id}: step {observed_step} or its user is gone; completing")
            elif following is not None:
                values = {"current_step": observed_step + 1, "next_send_at": self.next_send_at(following, now)}
            else:
                values = {"status": "completed", "completed_at": now}

            # Claim before sending: a concurrent sweep that read the same row matches nothing here.
            claimed = await session.execute(
                update(StepExecution)
                .where(
                    StepExecution.id == int(execution_id),
                    StepExecution.status == "active",
                    StepExecution.current_step == observed_step,
                    StepExecution.next_send_at == observed_due,
                )
                .values(**values)
            )
            if not claimed.rowcount:
                return False
            if current is None or user is None:
                return True

            content, blocked, line_user_id = current.content, bool(user.is_blocked), str(user.line_user_id)
            channel = await session.get(Channel, int(scenario.channel_id))

        if blocked:
            logger.info(f"Step execution {execution_id}: user {line_user_id} has blocked the account; not sending")
            return True

        try:
            messages = build_messages(parse_blocks(content))
        except (ValueError, TypeError) as e:
            logger.error(f"Step execution {execution_id}: step {observed_step} content is invalid: {e}")
            return True
        if not messages:
            return True

        try:
            await self.gateway.client_for(channel).push_message(line_user_id, messages)
        except LineApiError as e:
            logger.error(f"Step execution {execution_id}: push of step {observed_step} failed: {e}")
        return True
