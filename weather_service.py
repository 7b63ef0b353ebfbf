#!/usr/bin/env python3
"""
Weather Service — current weather + an AI-written promotional push message.

Pipeline (get_weather_and_message):
  1. OpenWeather current conditions for the city (metric units)
  2. Prompt Gemini (REST, aiohttp) or OpenAI (openai SDK) for a short Hindi,
     Bollywood-song-style notification that names the brand, as JSON
     {"title": ..., "body": ...}
  3. Reject a title/body pair already in the NotificationHistory ring buffer
     and regenerate with fresh random prompt elements (bounded attempts)

Every failure (missing key, HTTP error, unparseable model output) raises
WeatherServiceError; callers decide whether that is fatal.
"""

from __future__ import annotations

import json
import logging
import random
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import aiohttp
import openai
from openai import AsyncOpenAI

from api_keys import ApiKeyStore, mask_key

log = logging.getLogger("pivokart.weather")

OPENWEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"
GEMINI_URL      = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
PROVIDERS       = ("gemini", "openai")
HISTORY_SIZE    = 100
MAX_ATTEMPTS    = 5

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = (
    "You are a creative assistant that generates unique and creative Bollywood "
    "song-style weather notifications in Hindi. Be imaginative and never repeat "
    "the same notification twice. Focus on creating notifications that sound like "
    "Bollywood song lyrics with musical rhythm and flow."
)


class WeatherServiceError(Exception):
    pass


# ─── History ──────────────────────────────────────────────────────────────────

class NotificationHistory:
    """Bounded set of recently sent "title|body" keys; oldest evicted first."""

    def __init__(self, maxlen: int = HISTORY_SIZE):
        self.maxlen = maxlen
        self._order: deque[str] = deque()
        self._keys: set[str] = set()

    @staticmethod
    def key(title: str, body: str) -> str:
        return f"{title}|{body}"

    def seen(self, title: str, body: str) -> bool:
        return self.key(title, body) in self._keys

    def add(self, title: str, body: str) -> None:
        k = self.key(title, body)
        if k in self._keys:
            return
        self._order.append(k)
        self._keys.add(k)
        while len(self._order) > self.maxlen:
            self._keys.discard(self._order.popleft())

    def __len__(self) -> int:
        return len(self._order)


# ─── Weather data ─────────────────────────────────────────────────────────────

@dataclass
class WeatherInfo:
    city:        str
    temperature: float
    humidity:    int
    description: str
    main:        str
    is_rainy:    bool
    icon:        str = ""

    @classmethod
    def from_api(cls, data: dict) -> "WeatherInfo":
        try:
            current = data["weather"][0]
            main = str(current.get("main", ""))
            description = str(current.get("description", ""))
            return cls(
                city        = data["name"],
                temperature = data["main"]["temp"],
                humidity    = data["main"]["humidity"],
                description = description,
                main        = main,
                is_rainy    = any(w in main.lower() for w in ("rain", "drizzle"))
                              or "rain" in description.lower(),
                icon        = str(current.get("icon", "")),
            )
        except (KeyError, IndexError, TypeError) as exc:
            raise WeatherServiceError(f"Unexpected weather response: missing {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "city":        self.city,
            "temperature": self.temperature,
            "humidity":    self.humidity,
            "description": self.description,
            "main":        self.main,
            "isRainy":     self.is_rainy,
            "icon":        self.icon,
        }


# ─── Prompt ───────────────────────────────────────────────────────────────────

_EMOJI_SETS = [
    ["🌞", "🌡️", "🍦", "🥤", "🍉", "🥭", "🍧", "☔", "🌧️", "⛅", "🌤️", "🌈"],
    ["🔥", "❄️", "💧", "☀️", "🌙", "⭐", "🌟", "✨", "💫", "🎉", "🎊", "🎈"],
    ["🍕", "🍔", "🍟", "🌭", "🥪", "🌮", "🌯", "🥙", "🍜", "🍝", "🍛", "🍚"],
]
_SONG_STYLES = [
    "रोमांटिक गाना", "दोस्ती का गाना", "फैमिली गाना", "पार्टी गाना", "सदाबहार गाना",
    "डांस नंबर", "पॉप गाना", "फोक गाना", "रेट्रो गाना", "फिल्मी गाना",
]
_SONG_PATTERNS = [
    "ऐसा लगता है जैसे...", "मेरे दिल में है...", "आज का दिन है...", "ये पल है...",
    "मौसम है...", "बारिश है...", "धूप है...", "हवा है...",
]
_EMOTIONS = ["खुशी", "उमंग", "प्यार", "दोस्ती", "जोश", "उत्साह", "रोमांस", "नॉस्टेल्जिया"]
_MUSICAL = [
    "तबला की थाप", "सितार की तान", "हारमोनियम की धुन", "गिटार की तरंग",
    "फ्लूट की सुरीली आवाज", "ड्रम की धड़कन",
]
_RAINY_THEMES = ["बारिश की रिमझिम", "बादलों की छाया", "सुगंधित मिट्टी", "छतरी के नीचे"]
_SUNNY_THEMES = ["धूप की किरणें", "आसमान की नीलिमा", "हवा की ठंडक", "सूरज की गर्मी"]
_RAINY_FOOD   = ["गरम चाय की महक", "पकौड़ों की क्रिस्पीनेस", "समोसों की सुगंध", "गरम सूप की ताजगी"]
_SUNNY_FOOD   = ["आइसक्रीम की मिठास", "ठंडे शरबत की ताजगी", "फलों की रंगत", "सलाद की क्रंचीनेस"]
_TIME_OF_DAY  = ["सुबह की ताज़गी में", "दोपहर की गर्मी में", "शाम की ठंडक में", "सप्ताहांत के मज़े में"]


def build_prompt(weather: WeatherInfo, brand: str, rng: random.Random,
                 now: Optional[datetime] = None) -> str:
    """Randomised per call so consecutive prompts differ."""
    now = now or datetime.now(timezone.utc)
    emojis = rng.choice(_EMOJI_SETS)
    theme = rng.choice(_RAINY_THEMES if weather.is_rainy else _SUNNY_THEMES)
    food = rng.choice(_RAINY_FOOD if weather.is_rainy else _SUNNY_FOOD)
    rain = ", बारिश" if weather.is_rainy else ""
    return f"""
आप {brand} के लिए एक बिल्कुल नया और अनोखा बॉलीवुड सॉन्ग स्टाइल नोटिफिकेशन बनाएं।

मौसम: {weather.city} में {weather.description}, {weather.temperature}°C{rain}

नियम:
1. टाइटल: बॉलीवुड गाने के टाइटल जैसा (10-15 शब्द)
2. बॉडी: बॉलीवुड गाने के लिरिक्स जैसा (20-25 शब्द)
3. {brand} का नाम शामिल करें
4. बिल्कुल नया और अनोखा नोटिफिकेशन बनाएं (समय: {now.isoformat()}, सीड: {rng.randint(0, 99999)})
5. शराब का उल्लेख न करें
6. इस गाने के स्टाइल में बनाएं: {rng.choice(_SONG_STYLES)}
7. इस गाने के पैटर्न का उपयोग करें: {rng.choice(_SONG_PATTERNS)}
8. इस इमोशन में बनाएं: {rng.choice(_EMOTIONS)}
9. इस म्यूजिकल एलिमेंट का उपयोग करें: {rng.choice(_MUSICAL)}
10. इस मौसमी थीम का उपयोग करें: {theme}
11. इस खाने का उल्लेख करें: {food}
12. इस समय के अनुसार: {rng.choice(_TIME_OF_DAY)}
13. इन इमोजी का उपयोग करें: {rng.choice(emojis)} {rng.choice(emojis)}

JSON फॉर्मेट में जवाब दें:
{{
  "title": "टाइटल यहाँ",
  "body": "बॉडी यहाँ"
}}
"""


def parse_notification(text: str) -> dict:
    """Pull the first {...} block out of model output → {"title", "body"}."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        raise WeatherServiceError("Could not parse JSON from model response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise WeatherServiceError(f"Model returned invalid JSON: {exc}") from exc
    title = str(data.get("title", "")).strip() if isinstance(data, dict) else ""
    body = str(data.get("body", "")).strip() if isinstance(data, dict) else ""
    if not title or not body:
        raise WeatherServiceError("Model response is missing title or body")
    return {"title": title, "body": body}


# ─── Service ──────────────────────────────────────────────────────────────────

class WeatherService:

    def __init__(
        self,
        keys: ApiKeyStore,
        history: Optional[NotificationHistory] = None,
        city: str = "Tanakpur",
        provider: str = "gemini",
        gemini_model: str = "gemini-1.5-flash",
        openai_model: str = "gpt-3.5-turbo",
        brand: str = "Pivokart",
        max_attempts: int = MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ):
        self.keys = keys
        self.history = history if history is not None else NotificationHistory()
        self.city = city
        self.provider = provider
        self.gemini_model = gemini_model
        self.openai_model = openai_model
        self.brand = brand
        self.max_attempts = max_attempts
        self.rng = rng or random.Random()

    def _require_key(self, service: str, label: str) -> str:
        key = self.keys.get_key(service)
        if not key:
            raise WeatherServiceError(f"{label} API key not configured")
        log.info("Using %s API key %s", label, mask_key(key))
        return key

    # ─── Weather ───────────────────────────────────────────────────────────

    async def get_weather(self, city: Optional[str] = None) -> WeatherInfo:
        city = city or self.city
        api_key = self._require_key("openweather", "OpenWeather")
        params = {"q": city, "appid": api_key, "units": "metric"}
        log.info("Fetching weather data for %s", city)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(OPENWEATHER_URL, params=params) as r:
                    data = await r.json(content_type=None)
                    if r.status >= 400:
                        detail = data.get("message") if isinstance(data, dict) else r.reason
                        raise WeatherServiceError(f"Failed to fetch weather data: {detail}")
        except aiohttp.ClientError as exc:
            raise WeatherServiceError(f"Failed to fetch weather data: {exc}") from exc

        weather = WeatherInfo.from_api(data)
        log.info("Weather for %s: %s - %s, %s°C", weather.city, weather.main,
                 weather.description, weather.temperature)
        return weather

    # ─── Completion backends ───────────────────────────────────────────────

    async def _gemini(self, prompt: str, api_key: str) -> str:
        url = GEMINI_URL.format(model=self.gemini_model)
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, params={"key": api_key}, json=payload) as r:
                    data = await r.json(content_type=None)
                    if r.status >= 400:
                        error = data.get("error", {}) if isinstance(data, dict) else {}
                        raise WeatherServiceError(
                            f"Gemini HTTP {r.status}: {error.get('message', r.reason)}"
                        )
        except aiohttp.ClientError as exc:
            raise WeatherServiceError(f"Gemini request failed: {exc}") from exc
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise WeatherServiceError("Unexpected Gemini response shape") from exc

    async def _openai(self, prompt: str, api_key: str) -> str:
        try:
            async with AsyncOpenAI(api_key=api_key) as client:
                response = await client.chat.completions.create(
                    model=self.openai_model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=1.0,
                    max_tokens=150,
                    presence_penalty=0.6,
                    frequency_penalty=0.8,
                )
        except openai.OpenAIError as exc:
            raise WeatherServiceError(f"OpenAI request failed: {exc}") from exc
        return response.choices[0].message.content or ""

    async def _complete(self, provider: str, prompt: str, api_key: str) -> str:
        if provider == "openai":
            return await self._openai(prompt, api_key)
        return await self._gemini(prompt, api_key)

    # ─── Notification ──────────────────────────────────────────────────────

    async def generate_notification(self, weather: WeatherInfo, provider: Optional[str] = None) -> dict:
        provider = provider or self.provider
        if provider not in PROVIDERS:
            raise WeatherServiceError(f"Unknown AI provider {provider!r}; use one of {', '.join(PROVIDERS)}")
        api_key = self._require_key(provider, "Gemini" if provider == "gemini" else "OpenAI")

        for attempt in range(1, self.max_attempts + 1):
            prompt = build_prompt(weather, self.brand, self.rng)
            notification = parse_notification(await self._complete(provider, prompt, api_key))
            if not self.history.seen(notification["title"], notification["body"]):
                self.history.add(notification["title"], notification["body"])
                log.info("Notification generated with %s (attempt %d, history=%d)",
                         provider, attempt, len(self.history))
                return notification
            log.warning("Duplicate notification from %s (attempt %d/%d); regenerating",
                        provider, attempt, self.max_attempts)

        raise WeatherServiceError(
            f"Could not generate a unique notification after {self.max_attempts} attempts"
        )

    async def get_weather_and_message(self, city: Optional[str] = None,
                                      provider: Optional[str] = None) -> dict:
        provider = provider or self.provider
        weather = await self.get_weather(city)
        notification = await self.generate_notification(weather, provider)
        return {
            "weatherInfo":  weather.to_dict(),
            "notification": notification,
            "message":      f"{notification['title']}\n\n{notification['body']}",
            "provider":     provider,
        }
