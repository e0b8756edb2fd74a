"""Constants and default values."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any


# Priority levels, ordered low -> urgent
PRIORITIES = {
    "low": 0,
    "normal": 1,
    "high": 2,
    "urgent": 3,
}
DEFAULT_PRIORITY = "normal"

FREQUENCIES = (
    "once",
    "daily",
    "weekly",
    "biweekly",
    "monthly",
    "quarterly",
    "yearly",
    "custom",
)

NOTIFICATION_TYPES = (
    "check_in_reminder",
    "check_in_started",
    "check_in_completed",
    "note_shared",
    "note_mentioned",
    "milestone_achieved",
    "action_item_assigned",
    "action_item_due_soon",
    "action_item_completed",
    "relationship_request",
    "relationship_accepted",
    "partner_joined",
    "weekly_summary",
    "system_announcement",
    "feature_update",
    "reminder",
)

# Types the recipient is expected to act on
ACTION_REQUIRED_TYPES = frozenset(
    {"action_item_assigned", "relationship_request", "action_item_due_soon"}
)

# Delivery channels
CHANNEL_REALTIME = "realtime"
CHANNEL_PUSH = "push"
CHANNEL_EMAIL = "email"

# Retry policy for failed deliveries
RETRY_DELAYS = (
    timedelta(seconds=5),
    timedelta(seconds=30),
    timedelta(minutes=2),
)
MAX_RETRIES = 3

# Scheduling
DEFAULT_DUE_WINDOW = timedelta(minutes=10)  # +/- 5 minutes around the target
DEFAULT_NOTIFICATION_TTL = timedelta(hours=24)
LOW_PRIORITY_BATCH_DELAY = timedelta(seconds=2)
SLOW_DELIVERY_THRESHOLD = timedelta(seconds=5)
SLOW_DETECTION_THRESHOLD = timedelta(seconds=30)

# Default time of day for recurring reminders without one (24-hour format)
DEFAULT_TIME_OF_DAY = "19:00"

# Default action for reminder notifications by category
CATEGORY_ACTIONS = {
    "check_in": "/checkin/new",
    "milestone": "/growth",
    "anniversary": "/growth",
    "special_occasion": "/reminders",
    "custom": "/reminders",
}

# Derived metric injected before combination rules are evaluated
RECENT_MILESTONE_METRIC = "recent_milestone_count"


@dataclass(frozen=True)
class DetectionRule:
    """A single-metric threshold rule."""

    key: str
    title: str
    description: str
    metric: str
    threshold: Any = None  # None means "metric is truthy"
    op: str = ">="


@dataclass(frozen=True)
class Condition:
    """One clause of a combination rule."""

    metric: str
    threshold: Any
    op: str = ">="


@dataclass(frozen=True)
class CombinationRule:
    """A rule that needs every condition to hold at once."""

    key: str
    title: str
    description: str
    conditions: tuple[Condition, ...]


@dataclass(frozen=True)
class VelocityRule:
    """Meta-milestone for couples earning milestones quickly."""

    key: str
    title: str
    description: str
    window_days: int = 30
    rate_per_day: float = 0.5


@dataclass
class RuleBook:
    """Declarative milestone rules, evaluated in declared order."""

    categories: dict[str, list[DetectionRule]]
    combinations: list[CombinationRule] = field(default_factory=list)
    velocity: VelocityRule | None = None


def _thresholds(metric: str, prefix: str, rows: list[tuple]) -> list[DetectionRule]:
    return [
        DetectionRule(f"{prefix}_{value}" if key is None else key, title, description, metric, value)
        for value, key, title, description in rows
    ]


DEFAULT_RULE_BOOK = RuleBook(
    categories={
        "frequency": _thresholds(
            "total_checkins",
            "checkin",
            [
                (1, "first_checkin", "First Step", "Your journey begins!"),
                (10, None, "Getting Started", "10 check-ins completed!"),
                (25, None, "Quarter Century", "25 meaningful conversations!"),
                (50, None, "Halfway to 100", "50 check-ins achieved!"),
                (100, None, "Century", "100 check-ins - Amazing commitment!"),
                (200, None, "Double Century", "200 check-ins and growing strong!"),
                (365, None, "Daily for a Year", "A full year of check-ins!"),
                (500, None, "Half Thousand", "500 relationship investments!"),
                (1000, None, "Thousand Strong", "Four-digit commitment!"),
            ],
        ),
        "consistency": _thresholds(
            "current_streak_days",
            "streak",
            [
                (3, None, "Getting Consistent", "3-day streak started!"),
                (7, None, "Week Warrior", "Full week of daily check-ins!"),
                (14, None, "Fortnight Focus", "Two weeks straight!"),
                (21, None, "Habit Forming", "21 days to build a habit!"),
                (30, None, "Monthly Master", "30-day streak achieved!"),
                (60, None, "Two Month Momentum", "60 consecutive days!"),
                (90, None, "Quarter Champion", "90-day transformation!"),
                (180, None, "Half Year Hero", "Six months of consistency!"),
                (365, None, "Year of Connection", "Daily connection for a full year!"),
            ],
        ),
        "quality": [
            DetectionRule("high_satisfaction", "Satisfaction Stars", "Consistently high satisfaction!", "satisfaction_average", 4.5),
            DetectionRule("deep_conversations", "Deep Divers", "Meaningful, deep discussions!", "conversation_depth", 80),
            DetectionRule("vulnerability_champions", "Open Hearts", "Embracing vulnerability together!", "vulnerability_index", 75),
            DetectionRule("growth_oriented", "Growth Mindset", "Focused on continuous improvement!", "growth_focus", 70),
            DetectionRule("emotional_intelligence", "Emotional Masters", "Full emotional expression!", "emotional_range", 85),
        ],
        "growth": [
            DetectionRule("goal_5", "Goal Getters", "5 relationship goals achieved!", "goals_completed", 5),
            DetectionRule("goal_10", "Achievement Focused", "10 goals completed together!", "goals_completed", 10),
            DetectionRule("challenge_3", "Challenge Champions", "Overcame 3 challenges together!", "challenges_overcome", 3),
            DetectionRule("skill_5", "Skill Builders", "5 new relationship skills!", "skills_developed", 5),
            DetectionRule("rapid_growth", "Rapid Growth", "Exceptional improvement rate!", "improvement_velocity", 80),
        ],
        "special": [
            DetectionRule("anniversary", "Anniversary Celebration", "Celebrating your journey!", "anniversary"),
            DetectionRule("perfect_week", "Perfect Week", "Check-ins every day this week!", "perfect_week"),
            DetectionRule("perfect_month", "Perfect Month", "Not a single day missed!", "perfect_month"),
            DetectionRule("comeback", "Comeback Story", "Back stronger after a break!", "recovery"),
            DetectionRule("marathon", "Marathon Session", "Extended deep connection!", "marathon_session"),
        ],
        "seasonal": [
            DetectionRule("new_year_resolution", "New Year Strong", "Starting the year right!", "active_season", "new_year", "=="),
            DetectionRule("valentine_dedication", "Valentine Dedication", "Love in action!", "active_season", "valentine", "=="),
            DetectionRule("spring_renewal", "Spring Renewal", "Renewed commitment!", "active_season", "spring", "=="),
            DetectionRule("summer_consistency", "Summer Strong", "Consistent through summer!", "active_season", "summer", "=="),
            DetectionRule("gratitude_practice", "Gratitude Champions", "Thankful together!", "active_season", "thanksgiving", "=="),
            DetectionRule("year_end_reflection", "Year-End Reflection", "Reflecting on growth!", "active_season", "year_end", "=="),
        ],
        "collaborative": [
            DetectionRule("sharing_50", "Sharing Souls", "50 shared notes!", "shared_notes", 50),
            DetectionRule("teamwork_20", "Team Players", "20 joint action items!", "action_items_together", 20),
            DetectionRule("equal_partners", "Equal Partners", "Perfectly balanced participation!", "participation_balance", 90),
            DetectionRule("support_100", "Support System", "100 supportive interactions!", "support_given", 100),
        ],
        "communication": [
            DetectionRule("appreciation_50", "Appreciation Masters", "50 appreciations shared!", "appreciation_expressed", 50),
            DetectionRule("resolution_10", "Conflict Champions", "10 conflicts resolved!", "conflicts_resolved", 10),
            DetectionRule("topics_30", "Conversation Variety", "30 different topics explored!", "topics_discussed", 30),
            DetectionRule("feedback_25", "Feedback Friends", "25 constructive feedbacks!", "feedback_given", 25),
        ],
        "duration": _thresholds(
            "relationship_days",
            "duration",
            [
                (30, None, "One Month Strong", "Checking in for 30 days!"),
                (90, None, "Three Months", "Quarter year of growth!"),
                (180, None, "Six Months", "Half a year of connection!"),
                (365, None, "One Year Anniversary", "A full year together!"),
            ],
        ),
    },
    combinations=[
        CombinationRule(
            "triple_crown",
            "Triple Crown",
            "Consistency, satisfaction, and balance achieved!",
            (
                Condition("current_streak_days", 30),
                Condition("satisfaction_average", 4.0),
                Condition("participation_balance", 80),
            ),
        ),
        CombinationRule(
            "momentum_master",
            "Momentum Master",
            "Exceptional growth and achievement rate!",
            (
                Condition(RECENT_MILESTONE_METRIC, 5, ">"),
                Condition("improvement_velocity", 80, ">"),
            ),
        ),
    ],
    velocity=VelocityRule(
        "high_velocity", "Achievement Velocity", "Rapid milestone achievement rate!"
    ),
)
