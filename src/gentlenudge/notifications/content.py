"""Renders notification titles and messages from type and tone templates.

Every (type, tone) pair has a template with a few title, message and
action text variants. The variant is picked by a stable hash of the
notification identity, so identical inputs always render identically.
Tests or experiments that want variety inject a seeded ``random.Random``.
"""

from __future__ import annotations

import hashlib
import logging
import random
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from gentlenudge.notifications.models import (
    AchievementContext,
    AchievementType,
    DeadlineContext,
    EncouragementStyle,
    MessageTone,
    NotificationContent,
    NotificationContext,
    NotificationPriority,
    NotificationType,
    ProgressContext,
    StaleContext,
    UserPreferences,
)
from gentlenudge.notifications.tone import ToneAnalyzer, ToneConstraints, ToneSelection

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 60

_UUID = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)
_HEX_ID = re.compile(r"\b(?:notif_)?[0-9a-fA-F]{32}\b")

# Values quoted from the issue or the user; tone rewrites never touch them
VERBATIM_FIELDS = ("greeting", "key", "summary", "project", "achievement_label")


@dataclass(frozen=True)
class MessageTemplate:
    id: str
    titles: Tuple[str, ...]
    messages: Tuple[str, ...]
    action_texts: Tuple[str, ...]


T = NotificationType
M = MessageTone

TEMPLATES: Dict[Tuple[NotificationType, MessageTone], MessageTemplate] = {
    # -- stale reminders ------------------------------------------------------
    (T.STALE_REMINDER, M.ENCOURAGING): MessageTemplate(
        id="stale-encouraging",
        titles=(
            "{greeting}Time for a quick check-in ✨",
            "{greeting}{key} could use your expertise",
            "{greeting}Ready for a little progress? 🌟",
        ),
        messages=(
            "{key} ({summary}) has been waiting patiently for {staleness_phrase}. "
            "When you have a moment, a quick update would make a real difference. {encouragement}",
            "It's been {days_since_update} {days_word} since {key} last changed. "
            "No pressure, just a friendly nudge whenever you're ready. {encouragement}",
            "{key} in {project} has been sitting quietly for {staleness_phrase}. "
            "Your insights always help move things forward. {encouragement}",
        ),
        action_texts=("Take a look", "Check it out", "Update status"),
    ),
    (T.STALE_REMINDER, M.CASUAL): MessageTemplate(
        id="stale-casual",
        titles=(
            "{greeting}Hey, quick one about {key}",
            "{greeting}{key} is feeling a bit lonely",
        ),
        messages=(
            "Hey! {key} ({summary}) hasn't moved in {staleness_phrase}. "
            "Got a sec to drop an update? {encouragement}",
            "Just a heads up, {key} has been quiet for {days_since_update} {days_word}. "
            "No worries if you're swamped. {encouragement}",
        ),
        action_texts=("Sure, take me there", "Quick look"),
    ),
    (T.STALE_REMINDER, M.PROFESSIONAL): MessageTemplate(
        id="stale-professional",
        titles=(
            "Status update requested: {key}",
            "{key} has had no recent activity",
        ),
        messages=(
            "{key} ({summary}) has not been updated in {days_since_update} {days_word}. "
            "Please review its status when convenient.",
            "No activity has been recorded on {key} in {project} for "
            "{days_since_update} {days_word}. A brief status update is recommended.",
        ),
        action_texts=("Review issue", "Update status"),
    ),
    # -- deadline warnings ----------------------------------------------------
    (T.DEADLINE_WARNING, M.ENCOURAGING): MessageTemplate(
        id="deadline-encouraging",
        titles=(
            "{greeting}You've got this, {key} {due_short}",
            "{greeting}Final stretch for {key} 🚀",
            "{greeting}A friendly heads up about {key}",
        ),
        messages=(
            "{key} ({summary}) {due_phrase}. You've handled trickier things before, "
            "and we're confident this one will go smoothly. {encouragement}",
            "Just so you can plan ahead: {key} in {project} {due_phrase}. "
            "Take it one step at a time. {encouragement}",
            "{key} {due_phrase}. Whenever you're ready, a little progress today "
            "will make the finish line feel easy. {encouragement}",
        ),
        action_texts=("Let's finish this", "Plan my next step", "Take a look"),
    ),
    (T.DEADLINE_WARNING, M.CASUAL): MessageTemplate(
        id="deadline-casual",
        titles=(
            "{greeting}Heads up: {key} {due_short}",
            "{greeting}{key} is coming up soon",
        ),
        messages=(
            "Hey! Just a heads up that {key} ({summary}) {due_phrase}. "
            "You've totally got this. {encouragement}",
            "Quick FYI: {key} {due_phrase}. Nothing to stress about, "
            "just keeping it on your radar. {encouragement}",
        ),
        action_texts=("On it", "Take a peek"),
    ),
    (T.DEADLINE_WARNING, M.PROFESSIONAL): MessageTemplate(
        id="deadline-professional",
        titles=(
            "Upcoming deadline: {key} {due_short}",
            "Deadline notice for {key}",
        ),
        messages=(
            "{key} ({summary}) {due_phrase}. Please review the remaining work "
            "and update the issue as needed.",
            "{key} in {project} {due_phrase}. Estimated buffer before the due "
            "date: {buffer_hours} hours.",
        ),
        action_texts=("Review issue", "Open issue"),
    ),
    # -- progress updates -----------------------------------------------------
    (T.PROGRESS_UPDATE, M.ENCOURAGING): MessageTemplate(
        id="progress-encouraging",
        titles=("{greeting}Look at that progress 🌟", "{greeting}Nice momentum this week"),
        messages=(
            "You've moved {completed_this_week} {items_word} forward this week, "
            "including {key}. {encouragement}",
            "Great steady work on {project}. {key} is part of a strong week "
            "with {completed_this_week} {items_word} completed. {encouragement}",
        ),
        action_texts=("See my progress", "Keep going"),
    ),
    (T.PROGRESS_UPDATE, M.CASUAL): MessageTemplate(
        id="progress-casual",
        titles=("{greeting}Nice week so far", "{greeting}Quick progress check"),
        messages=(
            "{completed_this_week} {items_word} done this week, {key} included. Sweet! {encouragement}",
            "Hey, {key} and friends are moving along nicely in {project}. {encouragement}",
        ),
        action_texts=("Cool, show me", "Take a look"),
    ),
    (T.PROGRESS_UPDATE, M.PROFESSIONAL): MessageTemplate(
        id="progress-professional",
        titles=("Weekly progress summary", "Progress update for {project}"),
        messages=(
            "{completed_this_week} {items_word} completed this week, including {key}.",
            "Progress recorded on {key} in {project}. Items completed this week: "
            "{completed_this_week}.",
        ),
        action_texts=("View summary",),
    ),
    # -- team encouragement ---------------------------------------------------
    (T.TEAM_ENCOURAGEMENT, M.ENCOURAGING): MessageTemplate(
        id="team-encouraging",
        titles=("{greeting}Your team appreciates you 💙", "{greeting}Teamwork makes it happen"),
        messages=(
            "Your work on {key} helps everyone in {project} move forward. "
            "Thank you for being such a great teammate. {encouragement}",
            "The team is making steady progress on {project}, and {key} is part "
            "of that story. {encouragement}",
        ),
        action_texts=("See team progress", "Keep going"),
    ),
    (T.TEAM_ENCOURAGEMENT, M.CASUAL): MessageTemplate(
        id="team-casual",
        titles=("{greeting}Team high five", "{greeting}Go team"),
        messages=(
            "The {project} crew is on a roll, and {key} is part of it. {encouragement}",
            "Hey, your work on {key} is helping the whole team. Nice one. {encouragement}",
        ),
        action_texts=("Nice", "Show me"),
    ),
    (T.TEAM_ENCOURAGEMENT, M.PROFESSIONAL): MessageTemplate(
        id="team-professional",
        titles=("Team update for {project}", "Contribution acknowledged"),
        messages=(
            "Your contribution on {key} supports the team's objectives in {project}.",
            "The team has made measurable progress in {project}. Your work on {key} "
            "is appreciated.",
        ),
        action_texts=("View team board",),
    ),
    # -- achievements ---------------------------------------------------------
    (T.ACHIEVEMENT_RECOGNITION, M.ENCOURAGING): MessageTemplate(
        id="achievement-encouraging",
        titles=("{greeting}Amazing work 🎉", "{greeting}Fantastic progress ⭐", "{greeting}Well done!"),
        messages=(
            "Congratulations on {achievement_label}! You're making a real difference. "
            "{encouragement}",
            "Your dedication is showing: {achievement_label}. The whole team benefits "
            "from your great work. {encouragement}",
            "What a milestone, {achievement_label}. Thank you for all the effort you "
            "put in. {encouragement}",
        ),
        action_texts=("Keep going", "Celebrate", "I'm motivated"),
    ),
    (T.ACHIEVEMENT_RECOGNITION, M.CASUAL): MessageTemplate(
        id="achievement-casual",
        titles=("{greeting}Nice one!", "{greeting}Look at you go"),
        messages=(
            "Sweet, {achievement_label}. Totally earned it. {encouragement}",
            "Hey, {achievement_label}! That's pretty cool. {encouragement}",
        ),
        action_texts=("Thanks", "Woohoo"),
    ),
    (T.ACHIEVEMENT_RECOGNITION, M.PROFESSIONAL): MessageTemplate(
        id="achievement-professional",
        titles=("Achievement recorded", "Milestone reached"),
        messages=(
            "Recognition for {achievement_label}. Your work is appreciated.",
            "Milestone: {achievement_label}. Thank you for your consistent contribution.",
        ),
        action_texts=("View details",),
    ),
}

del T, M

ENCOURAGEMENT_PHRASES: Dict[EncouragementStyle, Tuple[str, ...]] = {
    EncouragementStyle.CHEERFUL: ("You're doing great!", "Keep shining!"),
    EncouragementStyle.SUPPORTIVE: (
        "We're here if you need anything.",
        "Take it at your own pace.",
    ),
    EncouragementStyle.GENTLE: ("No rush at all.", "Whenever you're ready."),
    EncouragementStyle.MOTIVATIONAL: ("You've got this!", "Keep the momentum going!"),
    EncouragementStyle.PROFESSIONAL: (
        "Thank you for your attention.",
        "Your work is appreciated.",
    ),
    EncouragementStyle.FRIENDLY: ("Hope your day is going well.", "Cheering you on."),
}


class _Variables(dict):
    def __missing__(self, key: str) -> str:
        return ""


def truncate_summary(summary: str, limit: int = SUMMARY_LIMIT) -> str:
    summary = " ".join(summary.split())
    if len(summary) <= limit:
        return summary
    return summary[: limit - 3].rstrip() + "..."


def scrub_identifiers(text: str) -> str:
    """Remove UUID-shaped and internal record identifiers from ``text``."""
    text = _UUID.sub("", text)
    text = _HEX_ID.sub("", text)
    text = re.sub(r"\(\s*\)", "", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    return re.sub(r"\s+([.,!?:])", r"\1", text).strip()


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def _due_phrases(context: DeadlineContext) -> Tuple[str, str]:
    deadline = context.deadline
    days = deadline.days_remaining
    if deadline.is_overdue:
        days_late = max(1, -days)
        return (
            f"was due {days_late} {_plural(days_late, 'day', 'days')} ago",
            "is past due",
        )
    if days <= 0:
        return "is due today", "is due today"
    if days == 1:
        return "is due tomorrow", "is due tomorrow"
    return f"is due in {days} days", f"is due in {days} days"


def _achievement_label(context: AchievementContext) -> str:
    if context.achievement_type is AchievementType.STREAK_MAINTAINED:
        count = context.streak_count
        return f"keeping a {count}-day streak going" if count else "keeping your streak going"
    if context.achievement_type is AchievementType.TEAM_CONTRIBUTION:
        if context.project_name:
            return f"your contribution to {context.project_name}"
        return "your contribution to the team"
    if context.issue_key and context.summary:
        return f"completing {context.issue_key} ({truncate_summary(context.summary)})"
    if context.issue_key:
        return f"completing {context.issue_key}"
    return "completing your work item"


class ContentGenerator:
    """Builds ``NotificationContent`` for a notification context.

    Args:
        tone_analyzer: Selects the rendering tone and constraints
        rng: Optional seeded random source for phrasing variety
    """

    def __init__(
        self,
        tone_analyzer: Optional[ToneAnalyzer] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.tone_analyzer = tone_analyzer or ToneAnalyzer()
        self._rng = rng

    def generate(
        self,
        context: NotificationContext,
        preferences: UserPreferences,
        priority: NotificationPriority,
        nudge_count: int = 0,
    ) -> NotificationContent:
        """Select a tone for ``context`` and render its content."""
        selection = self.tone_analyzer.select(preferences.preferred_tone, context.type, priority)
        return self.render(context, selection, preferences, nudge_count)

    def render(
        self,
        context: NotificationContext,
        selection: ToneSelection,
        preferences: UserPreferences,
        nudge_count: int = 0,
    ) -> NotificationContent:
        """Render content in an already selected tone.

        Args:
            context: Type-specific notification context
            selection: Tone and phrasing constraints
            preferences: Recipient preferences (greeting, encouragement style)
            nudge_count: Nudges already delivered for this issue

        Returns:
            Rendered content with identifiers scrubbed and constraints applied
        """
        template, tone = self._template_for(context.type, selection.tone)
        variables = self._variables(context, preferences, selection, nudge_count)

        identity = f"{context.type.value}|{tone.value}|{variables['key']}|{nudge_count}"
        title = self._pick(template.titles, identity, 0)
        message = self._pick(template.messages, identity, 1)
        action = self._pick(template.action_texts, identity, 2)

        constraints = self.tone_analyzer.constraints_for(tone)
        return NotificationContent(
            title=self._fill(title, variables, constraints),
            message=self._fill(message, variables, constraints),
            tone=tone,
            action_text=self._fill(action, variables, constraints),
            template_id=template.id,
        )

    def _fill(self, text: str, variables: _Variables, constraints: ToneConstraints) -> str:
        """Format ``text`` and apply tone constraints to everything but quoted values."""
        shielded = _Variables(variables)
        for index, name in enumerate(VERBATIM_FIELDS):
            shielded[name] = f"\x00{index}\x00"
        rendered = self.tone_analyzer.apply_constraints(text.format_map(shielded), constraints)
        for index, name in enumerate(VERBATIM_FIELDS):
            rendered = rendered.replace(f"\x00{index}\x00", str(variables[name]))
        return scrub_identifiers(rendered)

    def _template_for(
        self, notification_type: NotificationType, tone: MessageTone
    ) -> Tuple[MessageTemplate, MessageTone]:
        for candidate in (tone,) + self.tone_analyzer.fallbacks(tone):
            template = TEMPLATES.get((notification_type, candidate))
            if template is not None:
                if candidate is not tone:
                    logger.debug(
                        f"No {tone.value} template for {notification_type.value}, "
                        f"using {candidate.value}"
                    )
                return template, candidate
        raise KeyError(f"No template for {notification_type.value}")

    def _pick(self, variants: Tuple[str, ...], identity: str, salt: int) -> str:
        if self._rng is not None:
            return variants[self._rng.randrange(len(variants))]
        digest = hashlib.sha256(f"{identity}|{salt}".encode("utf-8")).digest()
        return variants[int.from_bytes(digest[:4], "big") % len(variants)]

    def _variables(
        self,
        context: NotificationContext,
        preferences: UserPreferences,
        selection: ToneSelection,
        nudge_count: int,
    ) -> _Variables:
        brief = selection.constraints.prefer_brevity
        variables = _Variables(
            greeting="" if brief or not preferences.personalized_greeting
            else f"{preferences.personalized_greeting.strip()} ",
            encouragement="" if brief else self._encouragement(preferences, nudge_count),
            nudge_count=nudge_count,
            key="",
            project="your project",
        )

        if isinstance(context, AchievementContext):
            variables.update(
                achievement_label=_achievement_label(context),
                streak_count=context.streak_count,
                key=context.issue_key or "",
            )
            if context.project_name:
                variables["project"] = context.project_name
            return variables

        issue = context.issue
        variables.update(
            key=issue.key,
            summary=truncate_summary(issue.summary),
            project=issue.project_name or issue.project_key or "your project",
        )

        if isinstance(context, StaleContext):
            days = context.days_since_update
            variables.update(
                days_since_update=days,
                days_word=_plural(days, "day", "days"),
                staleness_phrase="quite a while" if days > 7 else "a few days",
            )
        elif isinstance(context, DeadlineContext):
            due_phrase, due_short = _due_phrases(context)
            variables.update(
                days_remaining=context.deadline.days_remaining,
                due_phrase=due_phrase,
                due_short=due_short,
                buffer_hours=int(context.deadline.buffer_time_hours),
            )
        elif isinstance(context, ProgressContext):
            count = context.completed_this_week
            variables.update(
                completed_this_week=count,
                items_word=_plural(count, "item", "items"),
            )
        return variables

    def _encouragement(self, preferences: UserPreferences, nudge_count: int) -> str:
        phrases = ENCOURAGEMENT_PHRASES[preferences.encouragement_style]
        if self._rng is not None:
            return self._rng.choice(phrases)
        return phrases[nudge_count % len(phrases)]
