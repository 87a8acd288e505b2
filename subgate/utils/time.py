import time
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

# источник "сейчас" в unix-секундах; в тестах подменяется
Clock = Callable[[], int]

_MONTHS_RU = [
    "января", "февраля", "марта", "апреля", "мая", "июня",
    "июля", "августа", "сентября", "октября", "ноября", "декабря",
]

def now_ts() -> int:
    return int(time.time())

def format_date_ru(ts: int, tz_name: str = "Europe/Kyiv") -> str:
    dt = datetime.fromtimestamp(ts, tz=ZoneInfo(tz_name))
    return f"{dt.day} {_MONTHS_RU[dt.month - 1]} {dt.year}"

def format_datetime_ru(ts: int, tz_name: str = "Europe/Kyiv") -> str:
    dt = datetime.fromtimestamp(ts, tz=ZoneInfo(tz_name))
    return f"{format_date_ru(ts, tz_name)} {dt:%H:%M}"
