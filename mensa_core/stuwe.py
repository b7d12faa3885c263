"""
Scraping backend for the Studentenwerk Leipzig menu page.

Every (location, date) page is parsed into MealGroups and cached as JSON in
the meals table. A periodic refresh re-scrapes the next weekdays and reports
the locations whose plan for today changed.
"""

import json
import logging
import random
import time
from datetime import date, datetime
from typing import List

import requests
from bs4 import BeautifulSoup, Tag

from mensa_core.config import BotConfig
from mensa_core.meals import MealGroup, MealPlanProvider, SingleMeal, upcoming_weekdays
from mensa_core.store import RegistrationStore

logger = logging.getLogger(__name__)


def build_url_params(day: date, mensa_id: int) -> str:
    return f"location={mensa_id}&date={day.strftime('%Y-%m-%d')}"


def _has_classes(element: Tag, *classes: str) -> bool:
    return set(classes).issubset(element.get("class", []))


def _extract_meal(dish: Tag) -> SingleMeal | None:
    """Extracts name, price and extra ingredients from a single dish element."""
    name_element = dish.select_one("header > div > div > h4")
    if name_element is None:
        return None

    price = ""
    price_element = dish.select_one("header > div > div > p")
    if price_element is not None:
        price = price_element.get_text().split("\n")[-1].strip()

    ingredients = [li.get_text(strip=True) for li in dish.select("details > ul > li")]

    return SingleMeal(
        name=name_element.get_text(strip=True),
        price=price,
        additional_ingredients=ingredients,
    )


def parse_day_content(html_content: str, requested: date) -> List[MealGroup] | None:
    """
    Parses a menu page into meal groups.

    Returns:
        The groups, an empty list if the page shows another day than the
        requested one or no meals at all, or None if the page is not a menu.
    """
    soup = BeautifulSoup(html_content, "html.parser")

    selected = soup.select_one("select#edit-date > option[selected]")
    if selected is None:
        logger.warning(f"No date selector on menu page for {requested}")
        return None

    try:
        served = datetime.strptime(selected.get_text(strip=True).split(" ")[1], "%d.%m.%Y").date()
    except (IndexError, ValueError):
        logger.warning(f"Unreadable served date '{selected.get_text(strip=True)}'")
        return None

    if served != requested:
        return []

    container = soup.select_one("section.meals")
    if container is None:
        return []

    groups: List[MealGroup] = []
    for child in container.find_all(recursive=False):
        if not _has_classes(child, "title-prim"):
            continue

        group = MealGroup(meal_type=child.get_text(strip=True))

        # skip headlines until the accordion holding the dishes
        sibling = child.find_next_sibling()
        while sibling is not None and not _has_classes(sibling, "accordion", "u-block"):
            sibling = sibling.find_next_sibling()

        if sibling is not None:
            for dish in sibling.find_all(recursive=False):
                meal = _extract_meal(dish)
                if meal is not None:
                    group.sub_meals.append(meal)

        groups.append(group)

    return groups


def groups_to_json(groups: List[MealGroup]) -> str:
    return json.dumps([group.to_dict() for group in groups], ensure_ascii=False)


def groups_from_json(json_text: str) -> List[MealGroup]:
    return [MealGroup.from_dict(group) for group in json.loads(json_text)]


class StuWeProvider(MealPlanProvider):

    failure_text = "keine Daten vorhanden."

    def __init__(self, config: BotConfig, store: RegistrationStore):
        super().__init__(config)
        self.store = store
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36',
        })

    def fetch_day_html(self, day: date, mensa_id: int) -> str | None:
        url = f"{self.config.stuwe_url}?{build_url_params(day, mensa_id)}"
        try:
            resp = self.session.get(url, timeout=10)
            resp.raise_for_status()
            return resp.text
        except requests.exceptions.RequestException as e:
            logger.error(f"Error fetching menu of {mensa_id} for {day}: {e}")
            return None

    def scrape_day(self, day: date, mensa_id: int) -> List[MealGroup] | None:
        html_content = self.fetch_day_html(day, mensa_id)
        if html_content is None:
            return None
        return parse_day_content(html_content, day)

    def fetch_day(self, day: date, mensa_id: int) -> List[MealGroup] | None:
        key = build_url_params(day, mensa_id)
        cached = self.store.get_meals_json(key)
        if cached is not None:
            return groups_from_json(cached)

        groups = self.scrape_day(day, mensa_id)
        if groups is not None:
            self.store.save_meals_json(key, groups_to_json(groups))
        return groups

    def refresh(self, mensa_ids: List[int]) -> List[int]:
        today = self.today()
        changed_today: List[int] = []

        for mensa_id in mensa_ids:
            for day in upcoming_weekdays(today):
                groups = self.scrape_day(day, mensa_id)
                if groups is None:
                    continue

                key = build_url_params(day, mensa_id)
                json_text = groups_to_json(groups)
                previous = self.store.get_meals_json(key)

                if previous != json_text:
                    self.store.save_meals_json(key, json_text)
                    # the first download of a day is not reported
                    if previous is not None and day == today:
                        logger.info(f"Plan for today changed @Mensa {mensa_id}")
                        changed_today.append(mensa_id)

                time.sleep(random.uniform(0.2, 0.6))

        return changed_today
