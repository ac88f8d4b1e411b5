"""Chart generation capability consumed by the combined analysis relay.

The relay never inspects astrological correctness: whatever the provider returns
is normalized once into a ChartSummary whose fields are interpolated into the
prompt as opaque text.

- ``EphemerisChartProvider``: Swiss Ephemeris (pyswisseph) with timezonefinder
  and pytz for local time resolution.
- ``UnavailableChartProvider``: stands in when the library cannot be loaded.
- ``fallback_chart``: fixed record used whenever chart generation fails.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Literal, Optional, Protocol

import pytz
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from backend.config import DEFAULT_LOCATION
from backend.errors import ChartUnavailable

logger = logging.getLogger("career_relay")

UNKNOWN = "未知"

SIGN_NAMES_ZH = [
    "白羊座", "金牛座", "双子座", "巨蟹座", "狮子座", "处女座",
    "天秤座", "天蝎座", "射手座", "摩羯座", "水瓶座", "双鱼座",
]

ZODIAC_ANIMALS = ["鼠", "牛", "虎", "兔", "龙", "蛇", "马", "羊", "猴", "鸡", "狗", "猪"]

# 身主 by the earthly branch of the birth year (子 .. 亥).
BODY_STAR_BY_BRANCH = ["火星", "天相", "天梁", "天同", "文昌", "天机", "火星", "天相", "天梁", "天同", "文昌", "天机"]

# Sun longitude at 立春; dates before it in Jan/Feb belong to the previous zodiac year.
LICHUN_LONGITUDE = 315.0

CITY_COORDINATES: dict[str, tuple[float, float]] = {
    "北京": (39.9042, 116.4074),
    "上海": (31.2304, 121.4737),
    "广州": (23.1291, 113.2644),
    "深圳": (22.5431, 114.0579),
    "天津": (39.3434, 117.3616),
    "重庆": (29.5630, 106.5516),
    "成都": (30.5728, 104.0668),
    "杭州": (30.2741, 120.1551),
    "南京": (32.0603, 118.7969),
    "武汉": (30.5928, 114.3055),
    "西安": (34.3416, 108.9398),
    "长沙": (28.2282, 112.9388),
    "郑州": (34.7466, 113.6254),
    "沈阳": (41.8057, 123.4315),
    "哈尔滨": (45.8038, 126.5349),
    "昆明": (25.0389, 102.7183),
    "乌鲁木齐": (43.8256, 87.6168),
    "拉萨": (29.6525, 91.1721),
    "香港": (22.3193, 114.1694),
    "台北": (25.0330, 121.5654),
}

CITY_ALIASES: dict[str, str] = {
    "beijing": "北京",
    "shanghai": "上海",
    "guangzhou": "广州",
    "shenzhen": "深圳",
    "tianjin": "天津",
    "chongqing": "重庆",
    "chengdu": "成都",
    "hangzhou": "杭州",
    "nanjing": "南京",
    "wuhan": "武汉",
    "xian": "西安",
    "xi'an": "西安",
    "changsha": "长沙",
    "zhengzhou": "郑州",
    "shenyang": "沈阳",
    "harbin": "哈尔滨",
    "kunming": "昆明",
    "urumqi": "乌鲁木齐",
    "lhasa": "拉萨",
    "hong kong": "香港",
    "hongkong": "香港",
    "taipei": "台北",
}


@dataclass(frozen=True)
class PersonInfo:
    name: str
    gender: str
    birth_year: Optional[int]
    birth_month: Optional[int]
    birth_day: Optional[int]
    birth_hour: Optional[int]
    birth_minute: int = 0
    location: str = DEFAULT_LOCATION

    @property
    def has_birth_time(self) -> bool:
        return None not in (self.birth_year, self.birth_month, self.birth_day, self.birth_hour)


class ChartSummary(BaseModel):
    """Chart record with a documented default for every field.

    Text fields default to ``"未知"``; ``name`` defaults to an empty string.
    Accepts the camelCase keys produced by ziwei chart front-ends.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = ""
    soul: str = Field(UNKNOWN, validation_alias=AliasChoices("soul", "mingZhu"))
    body: str = Field(UNKNOWN, validation_alias=AliasChoices("body", "shenZhu"))
    five_elements_class: str = Field(
        UNKNOWN,
        validation_alias=AliasChoices("five_elements_class", "fiveElementsClass"),
    )
    zodiac: str = UNKNOWN
    sign: str = UNKNOWN
    moon_sign: str = Field(UNKNOWN, validation_alias=AliasChoices("moon_sign", "moonSign"))
    ascendant: str = UNKNOWN
    source: Literal["request", "ephemeris", "fallback"] = "request"

    @field_validator("soul", "body", "five_elements_class", "zodiac", "sign", "moon_sign", "ascendant", mode="before")
    @classmethod
    def _text_or_unknown(cls, value: Any) -> str:
        if value is None or isinstance(value, (dict, list)):
            return UNKNOWN
        text = str(value).strip()
        return text or UNKNOWN

    @field_validator("name", mode="before")
    @classmethod
    def _name_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    def prompt_fields(self) -> list[tuple[str, str]]:
        return [
            ("命主", self.soul),
            ("身主", self.body),
            ("五行局", self.five_elements_class),
            ("生肖", self.zodiac),
            ("太阳星座", self.sign),
            ("月亮星座", self.moon_sign),
            ("上升星座", self.ascendant),
        ]


# Keys that mark a payload as a precomputed chart.
CHART_KEYS = frozenset(
    {
        "soul",
        "mingZhu",
        "body",
        "shenZhu",
        "five_elements_class",
        "fiveElementsClass",
        "zodiac",
        "sign",
        "moon_sign",
        "moonSign",
        "ascendant",
    }
)


def chart_from_request(payload: Any, subject: PersonInfo) -> Optional[ChartSummary]:
    """Normalize a precomputed ``ziweiAnalysis`` payload; returns None when it is unusable."""
    if not isinstance(payload, dict):
        return None
    merged: dict[str, Any] = {k: v for k, v in payload.items() if k != "userInfo"}
    user_info = payload.get("userInfo")
    if isinstance(user_info, dict):
        merged.update(user_info)
    if not CHART_KEYS.intersection(merged):
        return None
    merged["name"] = merged.get("name") or subject.name
    merged["source"] = "request"
    return ChartSummary.model_validate(merged)


def fallback_chart(subject: PersonInfo) -> ChartSummary:
    return ChartSummary(
        name=subject.name,
        soul="贪狼",
        body="天相",
        five_elements_class="水二局",
        source="fallback",
    )


class ChartProvider(Protocol):
    backend: str

    def compute(self, subject: PersonInfo) -> ChartSummary: ...

    def status(self) -> dict[str, Any]: ...


class UnavailableChartProvider:
    backend = "unavailable"

    def __init__(self, reason: str):
        self.reason = reason

    def compute(self, subject: PersonInfo) -> ChartSummary:
        raise ChartUnavailable(f"Chart library unavailable: {self.reason}")

    def status(self) -> dict[str, Any]:
        return {"chart_backend": self.backend, "chart_error": self.reason}


def normalize_location(location: Any, default_location: str = DEFAULT_LOCATION) -> str:
    text = str(location or "").strip()
    if not text:
        return default_location
    if text.endswith("市"):
        text = text[:-1]
    return CITY_ALIASES.get(text.lower(), text)


def sign_name(longitude: float) -> str:
    return SIGN_NAMES_ZH[int((longitude % 360.0) // 30.0) % 12]


def zodiac_year(year: int, month: int, sun_longitude: float) -> int:
    if month <= 2 and 270.0 <= sun_longitude < LICHUN_LONGITUDE:
        return year - 1
    return year


def year_branch_index(year: int) -> int:
    # 1984 is a 甲子 year.
    return (year - 1984) % 12


@lru_cache(maxsize=4096)
def _timezone_utc_offset_hours(tz_name: str, year: int, month: int, day: int, hour: int) -> float:
    tz = pytz.timezone(tz_name)
    sample_dt = datetime(year, month, day, hour)
    return float(tz.utcoffset(sample_dt).total_seconds() / 3600.0)


class EphemerisChartProvider:
    backend = "swisseph"

    def __init__(self, swe: Any, timezone_finder: Any = None, default_location: str = DEFAULT_LOCATION, ephe_path: str | None = None):
        self._swe = swe
        self._timezone_finder = timezone_finder
        self._default_location = default_location
        self._ephe_path = ephe_path

    def status(self) -> dict[str, Any]:
        return {
            "chart_backend": self.backend,
            "ephemeris_path": self._ephe_path,
            "timezone_resolver": "timezonefinder" if self._timezone_finder is not None else None,
        }

    def resolve_coordinates(self, location: str) -> tuple[str, float, float]:
        city = normalize_location(location, self._default_location)
        if city not in CITY_COORDINATES:
            logger.warning("Unknown birth location '%s'; using default location %s", location, self._default_location)
            city = self._default_location
        lat, lon = CITY_COORDINATES.get(city, CITY_COORDINATES[DEFAULT_LOCATION])
        return city, lat, lon

    def resolve_utc_offset(self, subject: PersonInfo, lat: float, lon: float) -> float:
        if self._timezone_finder is None:
            raise ChartUnavailable("Timezone resolution is unavailable")
        tz_name = self._timezone_finder.timezone_at(lat=lat, lng=lon)
        if not tz_name:
            raise ChartUnavailable(f"Unable to determine timezone for lat={lat}, lon={lon}")
        return _timezone_utc_offset_hours(
            str(tz_name), subject.birth_year, subject.birth_month, subject.birth_day, subject.birth_hour
        )

    def compute(self, subject: PersonInfo) -> ChartSummary:
        try:
            return self._compute(subject)
        except ChartUnavailable:
            raise
        except Exception as exc:
            raise ChartUnavailable(f"Chart computation failed: {exc}") from exc

    def _compute(self, subject: PersonInfo) -> ChartSummary:
        if not subject.has_birth_time:
            raise ChartUnavailable("Birth date and hour are required for chart generation")
        swe = self._swe
        city, lat, lon = self.resolve_coordinates(subject.location)
        tz_offset = self.resolve_utc_offset(subject, lat, lon)
        hour_frac = subject.birth_hour + subject.birth_minute / 60.0
        jd = swe.julday(subject.birth_year, subject.birth_month, subject.birth_day, hour_frac - tz_offset)

        sun_pos, _ = swe.calc_ut(jd, swe.SUN)
        moon_pos, _ = swe.calc_ut(jd, swe.MOON)
        _cusps, ascmc = swe.houses(jd, lat, lon, b"P")

        sun_lon = float(sun_pos[0])
        branch = year_branch_index(zodiac_year(subject.birth_year, subject.birth_month, sun_lon))
        logger.debug(
            "Chart computed city=%s tz_offset=%s jd=%s sun_lon=%.3f",
            city,
            tz_offset,
            jd,
            sun_lon,
        )
        return ChartSummary(
            name=subject.name,
            body=BODY_STAR_BY_BRANCH[branch],
            zodiac=ZODIAC_ANIMALS[branch],
            sign=sign_name(sun_lon),
            moon_sign=sign_name(float(moon_pos[0])),
            ascendant=sign_name(float(ascmc[0])),
            source="ephemeris",
        )


def load_chart_provider(default_location: str = DEFAULT_LOCATION) -> ChartProvider:
    """Load the chart library once; the returned capability is injected into the app."""
    try:
        import swisseph as swe
    except ImportError as exc:
        logger.warning("Swiss Ephemeris not installed; charts will use the fallback record: %s", exc)
        return UnavailableChartProvider(str(exc))

    ephe_path = os.getenv("SWE_EPHE_PATH", "").strip() or None
    if ephe_path:
        try:
            swe.set_ephe_path(ephe_path)
        except Exception as exc:
            logger.warning("Failed to set ephemeris path: %s", exc)

    try:
        from timezonefinder import TimezoneFinder

        timezone_finder = TimezoneFinder()
    except Exception as exc:
        logger.warning("TimezoneFinder initialization failed: %s", exc)
        timezone_finder = None

    return EphemerisChartProvider(
        swe,
        timezone_finder=timezone_finder,
        default_location=default_location,
        ephe_path=ephe_path,
    )


def build_chart_summary(
    provider: ChartProvider,
    subject: PersonInfo,
    precomputed: Any = None,
) -> ChartSummary:
    """Return the chart used for the prompt; generation failures degrade to ``fallback_chart``."""
    from_request = chart_from_request(precomputed, subject)
    if from_request is not None:
        return from_request
    try:
        return provider.compute(subject)
    except ChartUnavailable as exc:
        logger.warning("Chart generation failed; using fallback chart: %s", exc)
        return fallback_chart(subject)
