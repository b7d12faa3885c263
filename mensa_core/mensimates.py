"""JSON API backend (MensiMates / mensaHub)."""

import logging
import threading
from datetime import date
from typing import Any, Dict, List

import requests

from mensa_core.config import BotConfig
from mensa_core.meals import MealGroup, MealPlanProvider, SingleMeal

logger = logging.getLogger(__name__)

MENSA_SLUGS: Dict[int, str] = {
    106: "mensa_am_park",
    111: "mensa_peterssteinweg",
    115: "mensa_am_elsterbecken",
    118: "mensa_academica",
    127: "menseria_am_botanischen_garten",
    140: "mensa_schoenauerstr",
    153: "cafeteria_dittrichring",
    162: "mensa_am_medizincampus",
    170: "mensa_tierklinik",
}


def group_meals(meals: List[Dict[str, Any]]) -> List[MealGroup]:
    """Groups API meals by category, keeping the order of first appearance."""
    groups: Dict[str, MealGroup] = {}
    for meal in meals:
        category = meal.get("category") or "Sonstiges"
        group = groups.setdefault(category, MealGroup(meal_type=category))

        ingredients = [
            part.strip()
            for part in (meal.get("description") or "").split("&")
            if part.strip() and part.strip() != "N/A"
        ]
        group.sub_meals.append(
            SingleMeal(
                name=meal.get("name", "N/A"),
                price=meal.get("price", ""),
                additional_ingredients=ingredients,
                allergens=meal.get("allergens"),
            )
        )
    return list(groups.values())


class MensiMatesProvider(MealPlanProvider):

    def __init__(self, config: BotConfig):
        super().__init__(config)
        self.session = requests.Session()
        self._token = ""
        self._token_lock = threading.Lock()

    def get_mensen(self) -> Dict[int, str]:
        return {mensa_id: name for mensa_id, name in self.config.mensen.items() if mensa_id in MENSA_SLUGS}

    def refresh_token(self) -> None:
        """Logs in and stores a fresh bearer token."""
        if not self.config.mensimates_user or not self.config.mensimates_password:
            logger.warning("MensiMates credentials are not configured, requests will be anonymous")
            return

        try:
            resp = self.session.post(
                f"{self.config.mensimates_url}/auth/login",
                json={
                    "apiUsername": self.config.mensimates_user,
                    "password": self.config.mensimates_password,
                },
                timeout=10,
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"MensiMates login failed: {e}")
            return

        with self._token_lock:
            self._token = resp.text.strip()
        logger.debug("Got new MensiMates token")

    def fetch_day(self, day: date, mensa_id: int) -> List[MealGroup] | None:
        slug = MENSA_SLUGS.get(mensa_id)
        if slug is None:
            logger.error(f"No MensiMates slug for mensa {mensa_id}")
            return None

        with self._token_lock:
            token = self._token

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            resp = self.session.get(
                f"{self.config.mensimates_url}/{slug}/servingDate/{day.strftime('%Y-%m-%d')}",
                headers=headers,
                timeout=10,
            )
            resp.raise_for_status()
            meals = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"MensiMates request for {slug} on {day} failed: {e}")
            return None

        if not isinstance(meals, list):
            logger.error(f"Unexpected MensiMates payload for {slug} on {day}")
            return None

        return group_meals(meals)

    def refresh(self, mensa_ids: List[int]) -> List[int]:
        self.refresh_token()
        return []
