"""Assemble the tutor prompt from learning context and recent conversation."""

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tutor_chat.ai.prompts import SPEAKER_LABELS, SYSTEM_PROMPT
from tutor_chat.models.chat import ChatMessage
from tutor_chat.models.goal import Goal, Milestone
from tutor_chat.services import chat_service

logger = logging.getLogger(__name__)

MAX_RECENT_GOALS = 3
RECENT_GOAL_STATUSES = ("active", "paused")


@dataclass
class MilestoneInfo:
    title: str
    completed: bool
    due_date: date | None
    order: int


@dataclass
class GoalContext:
    title: str
    description: str | None
    status: str
    difficulty_level: str | None
    estimated_duration_weeks: int | None
    milestones: list[MilestoneInfo] = field(default_factory=list)

    @property
    def completed_milestones(self) -> int:
        return sum(1 for m in self.milestones if m.completed)

    @property
    def next_milestone(self) -> MilestoneInfo | None:
        """First incomplete milestone in milestone order."""
        return next((m for m in self.milestones if not m.completed), None)


@dataclass
class RecentGoal:
    title: str
    status: str
    difficulty_level: str | None


@dataclass
class ProfileContext:
    total_goals: int = 0
    active_goals: int = 0
    completed_goals: int = 0
    total_milestones: int = 0
    completed_milestones: int = 0
    total_chat_messages: int = 0
    recent_active_goals: list[RecentGoal] = field(default_factory=list)


async def load_goal_context(
    db: AsyncSession, user_id: int, goal_id: int
) -> GoalContext | None:
    """Load one goal with its milestones, or None unless the caller owns it."""
    result = await db.execute(
        select(Goal).where(Goal.id == goal_id, Goal.user_id == user_id)
    )
    goal = result.scalar_one_or_none()
    if goal is None:
        return None

    milestone_rows = await db.execute(
        select(Milestone)
        .where(Milestone.goal_id == goal.id)
        .order_by(Milestone.milestone_order.asc(), Milestone.id.asc())
    )
    milestones = [
        MilestoneInfo(
            title=m.title,
            completed=bool(m.completed),
            due_date=m.due_date,
            order=m.milestone_order,
        )
        for m in milestone_rows.scalars().all()
    ]
    return GoalContext(
        title=goal.title,
        description=goal.description,
        status=goal.status,
        difficulty_level=goal.difficulty_level,
        estimated_duration_weeks=goal.estimated_duration_weeks,
        milestones=milestones,
    )


async def load_profile_context(db: AsyncSession, user_id: int) -> ProfileContext:
    """Aggregate goal, milestone and chat counts for a user's general chat."""
    goal_row = (
        await db.execute(
            select(
                func.count(Goal.id).label("total"),
                func.count(case((Goal.status == "active", 1))).label("active"),
                func.count(case((Goal.status == "completed", 1))).label("completed"),
            ).where(Goal.user_id == user_id)
        )
    ).one()

    milestone_row = (
        await db.execute(
            select(
                func.count(Milestone.id).label("total"),
                func.count(case((Milestone.completed.is_(True), 1))).label("completed"),
            )
            .join(Goal, Goal.id == Milestone.goal_id)
            .where(Goal.user_id == user_id)
        )
    ).one()

    total_chat_messages = (
        await db.execute(
            select(func.count(ChatMessage.id)).where(ChatMessage.user_id == user_id)
        )
    ).scalar_one()

    recent_rows = await db.execute(
        select(Goal)
        .where(Goal.user_id == user_id, Goal.status.in_(RECENT_GOAL_STATUSES))
        .order_by(Goal.updated_at.desc(), Goal.id.desc())
        .limit(MAX_RECENT_GOALS)
    )

    return ProfileContext(
        total_goals=int(goal_row.total or 0),
        active_goals=int(goal_row.active or 0),
        completed_goals=int(goal_row.completed or 0),
        total_milestones=int(milestone_row.total or 0),
        completed_milestones=int(milestone_row.completed or 0),
        total_chat_messages=int(total_chat_messages or 0),
        recent_active_goals=[
            RecentGoal(title=g.title, status=g.status, difficulty_level=g.difficulty_level)
            for g in recent_rows.scalars().all()
        ],
    )


def render_goal_context(goal: GoalContext) -> str:
    level = goal.difficulty_level or "unspecified"
    lines = [
        "Current Learning Context:",
        f"- Goal: {goal.title} ({level} level)",
        f"- Description: {goal.description or 'No description'}",
        f"- Status: {goal.status}",
        f"- Progress: {goal.completed_milestones}/{len(goal.milestones)} milestones completed",
    ]
    if goal.estimated_duration_weeks is not None:
        lines.append(f"- Estimated Duration: {goal.estimated_duration_weeks} weeks")

    upcoming = goal.next_milestone
    if upcoming is not None:
        line = f"- Next Milestone: {upcoming.title}"
        if upcoming.due_date is not None:
            line += f" (Due: {upcoming.due_date.isoformat()})"
        lines.append(line)
    return "\n".join(lines)


def render_profile_context(profile: ProfileContext) -> str:
    lines = [
        "User Learning Profile:",
        (
            f"- Total Goals: {profile.total_goals} "
            f"({profile.active_goals} active, {profile.completed_goals} completed)"
        ),
        (
            f"- Milestone Progress: {profile.completed_milestones}/"
            f"{profile.total_milestones} completed"
        ),
        f"- Chat History: {profile.total_chat_messages} messages exchanged",
    ]
    if profile.recent_active_goals:
        rendered = ", ".join(
            f"{g.title} ({g.status}, {g.difficulty_level})"
            if g.difficulty_level
            else f"{g.title} ({g.status})"
            for g in profile.recent_active_goals
        )
        lines.append(f"- Recent Active Goals: {rendered}")
    return "\n".join(lines)


def render_conversation(turns: list[ChatMessage]) -> str:
    return "\n".join(
        f"{SPEAKER_LABELS.get(turn.sender, 'User')}: {turn.message}" for turn in turns
    )


async def build_learning_context(
    db: AsyncSession, user_id: int, goal_id: int | None = None
) -> str:
    """Return the goal block (owner-scoped) or the profile block.

    A goal that does not belong to ``user_id`` produces an empty string.
    """
    if goal_id is not None:
        goal = await load_goal_context(db, user_id, goal_id)
        if goal is None:
            logger.info("Goal %s not found for user %s; chatting without goal context", goal_id, user_id)
            return ""
        return render_goal_context(goal)

    return render_profile_context(await load_profile_context(db, user_id))


def assemble_prompt(context_block: str, conversation: str, user_message: str) -> str:
    parts = [SYSTEM_PROMPT]
    if context_block:
        parts.extend(["", context_block])
    parts.extend(["", "Previous conversation:", conversation or "(none)", "", f"User: {user_message}"])
    return "\n".join(parts)


async def build_prompt(
    db: AsyncSession,
    user_id: int,
    user_message: str,
    goal_id: int | None = None,
    *,
    exclude_message_id: int | None = None,
    max_turns: int = 10,
) -> str:
    """Build the full generation prompt for one user turn."""
    context_block = await build_learning_context(db, user_id, goal_id)
    recent_turns = await chat_service.get_recent_turns(
        db, user_id, limit=max_turns, exclude_id=exclude_message_id
    )
    return assemble_prompt(context_block, render_conversation(recent_turns), user_message)
