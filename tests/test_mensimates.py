from datetime import date

import pytest
import requests

from mensa_core.config import BotConfig
from mensa_core.meals import MealGroup, SingleMeal
from mensa_core.mensimates import MENSA_SLUGS, MensiMatesProvider, group_meals

API_MEALS = [
    {"name": "Tofu-Curry", "category": "Vegan", "price": "2,50 €", "description": "Reis & N/A & Koriander"},
    {"name": "Schnitzel", "category": "Fleisch", "price": "3,90 €", "description": "N/A"},
    {"name": "Linsen-Dal", "category": "Vegan", "price": "2,50 €", "description": None, "allergens": "Sellerie"},
    {"name": "Apfel"},
]


def test_group_meals_keeps_api_order():
    assert group_meals(API_MEALS) == [
        MealGroup("Vegan", [
            SingleMeal("Tofu-Curry", "2,50 €", ["Reis", "Koriander"]),
            SingleMeal("Linsen-Dal", "2,50 €", [], "Sellerie"),
        ]),
        MealGroup("Fleisch", [SingleMeal("Schnitzel", "3,90 €")]),
        MealGroup("Sonstiges", [SingleMeal("Apfel")]),
    ]


def test_group_meals_empty_day():
    assert group_meals([]) == []


class FakeResponse:

    def __init__(self, payload=None, text="", status_code=200):
        self.payload = payload
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload


@pytest.fixture
def provider():
    config = BotConfig(
        token="123:TEST",
        backend="mensimates",
        mensimates_url="https://api.example/mensaHub",
        mensimates_user="bot",
        mensimates_password="secret",
    )
    return MensiMatesProvider(config)


def test_only_locations_with_slug_are_offered(provider):
    assert set(provider.get_mensen()) == set(MENSA_SLUGS)


def test_fetch_day_sends_token(provider, monkeypatch):
    requests_seen = []

    def fake_post(url, json, timeout):
        requests_seen.append(("POST", url, json))
        return FakeResponse(text="abc.def.ghi\n")

    def fake_get(url, headers, timeout):
        requests_seen.append(("GET", url, headers))
        return FakeResponse(payload=API_MEALS[:1])

    monkeypatch.setattr(provider.session, "post", fake_post)
    monkeypatch.setattr(provider.session, "get", fake_get)

    assert provider.refresh([106]) == []
    groups = provider.fetch_day(date(2024, 10, 14), 106)

    assert groups[0].sub_meals[0].name == "Tofu-Curry"
    assert requests_seen[0] == (
        "POST", "https://api.example/mensaHub/auth/login", {"apiUsername": "bot", "password": "secret"}
    )
    assert requests_seen[1] == (
        "GET",
        "https://api.example/mensaHub/mensa_am_park/servingDate/2024-10-14",
        {"Authorization": "Bearer abc.def.ghi"},
    )


def test_fetch_day_failure_returns_none(provider, monkeypatch):
    def fake_get(*args, **kwargs):
        raise requests.exceptions.Timeout("read timed out")

    monkeypatch.setattr(provider.session, "get", fake_get)

    assert provider.fetch_day(date(2024, 10, 14), 106) is None


def test_fetch_day_unexpected_payload(provider, monkeypatch):
    monkeypatch.setattr(provider.session, "get", lambda *a, **kw: FakeResponse(payload={"error": "unknown"}))

    assert provider.fetch_day(date(2024, 10, 14), 106) is None


def test_unknown_location_returns_none(provider):
    assert provider.fetch_day(date(2024, 10, 14), 999) is None
