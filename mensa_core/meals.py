"""
Meal plan records, message formatting and the backend interface.

Backends only have to turn a (date, location) pair into a list of MealGroups;
choosing the date, timing, error handling and the Telegram MarkdownV2
rendering live here so every backend produces the same messages.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Tuple

from telegram.helpers import escape_markdown

from mensa_core.config import BotConfig

logger = logging.getLogger(__name__)

EMOJIS = ["☀️", "🦀", "💂🏻‍♀️", "☕️", "☝🏻", "🌤️", "🥦"]
GERMAN_WEEKDAYS = ["Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag", "Samstag", "Sonntag"]


@dataclass
class SingleMeal:
    name: str
    price: str = ""
    additional_ingredients: List[str] = field(default_factory=list)
    allergens: str | None = None


@dataclass
class MealGroup:
    meal_type: str
    sub_meals: List[SingleMeal] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MealGroup":
        return cls(
            meal_type=data["meal_type"],
            sub_meals=[SingleMeal(**meal) for meal in data.get("sub_meals", [])],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def german_date(day: date) -> str:
    return f"{GERMAN_WEEKDAYS[day.weekday()]}, {day.strftime('%d.%m.%Y')}"


def requested_date(days_forward: int, today: date) -> Tuple[date, int]:
    """
    Picks the day to show. Weekend days are moved to the following Monday.

    Returns:
        The date and by how many days it was moved.
    """
    day = today + timedelta(days=days_forward)
    if day.weekday() == 5:
        return day + timedelta(days=2), 2
    if day.weekday() == 6:
        return day + timedelta(days=1), 1
    return day, 0


def upcoming_weekdays(today: date, count: int = 3) -> List[date]:
    """
    The days a cache refresh has to cover: today and the next days up to
    `count`, where a weekend inside that window is replaced by Monday.
    """
    days: List[date] = []
    for offset in range(count):
        day = today + timedelta(days=offset)
        if day.weekday() < 5:
            days.append(day)
        elif offset != 0:
            days.append(requested_date(offset, today)[0])
            break
    return days


def format_day_message(
    date_text: str,
    groups: List[MealGroup] | None,
    hint: str = "",
    emoji: str | None = None,
    failure_text: str = "Abfrage fehlgeschlagen.",
) -> str:
    """Renders one day's plan as Telegram MarkdownV2."""
    emoji = emoji or random.choice(EMOJIS)
    lines = [f"{emoji} _{escape_markdown(date_text, version=2)}_{escape_markdown(hint, version=2)} {emoji}"]

    if groups is None:
        lines.append(f"\n*{escape_markdown(failure_text, version=2)}*")
    elif not groups:
        lines.append(f"\n*{escape_markdown('keine Daten vorhanden.', version=2)}*")

    for group in groups or []:
        lines.append(f"\n*{escape_markdown(group.meal_type, version=2)}*")
        if not group.sub_meals:
            continue

        first_price = group.sub_meals[0].price
        price_is_shared = all(meal.price == first_price for meal in group.sub_meals)

        for meal in group.sub_meals:
            lines.append(f" • __{escape_markdown(meal.name, version=2)}__")
            for ingredient in meal.additional_ingredients:
                lines.append(f"     + _{escape_markdown(ingredient, version=2)}_")
            if not price_is_shared and meal.price:
                lines.append(f"   {escape_markdown(meal.price, version=2)}")

        if price_is_shared and first_price:
            lines.append(f"   {escape_markdown(first_price, version=2)}")

    return "\n".join(lines) + "\n"


class MealPlanProvider(ABC):
    """Common interface of the scraping and the JSON API backends."""

    failure_text = "Abfrage fehlgeschlagen."

    def __init__(self, config: BotConfig):
        self.config = config
        self.timezone = config.timezone

    def today(self) -> date:
        return datetime.now(self.timezone).date()

    def get_mensen(self) -> Dict[int, str]:
        return dict(self.config.mensen)

    @abstractmethod
    def fetch_day(self, day: date, mensa_id: int) -> List[MealGroup] | None:
        """
        Loads the meals of one location and day.

        Returns:
            The meal groups (empty if nothing is served), or None if the
            upstream source could not be read.
        """

    def refresh(self, mensa_ids: List[int]) -> List[int]:
        """
        Periodic maintenance hook.

        Returns:
            The locations whose plan for today changed since the last refresh.
        """
        return []

    async def build_message(self, days_forward: int, mensa_id: int) -> str:
        """Returns the display text for a day offset. Never raises."""
        day, shifted_by = requested_date(days_forward, self.today())

        hint = ""
        if days_forward == 0 and shifted_by == 1:
            hint = " (Morgen)"
        elif days_forward == 0 and shifted_by == 2:
            hint = " (Übermorgen)"

        started = time.perf_counter()
        try:
            groups = await asyncio.to_thread(self.fetch_day, day, mensa_id)
        except Exception as e:
            logger.error(f"Loading meals of {mensa_id} for {day} failed: {e}")
            groups = None
        logger.debug(f"Loaded meals of {mensa_id} for {day} in {time.perf_counter() - started:.2f}s")

        return format_day_message(german_date(day), groups, hint, failure_text=self.failure_text)
