import logging

from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import InvalidRangeError
from backend.models.notification import AppSetting
from backend.services.timezone_math import TimeZoneMath

logger = logging.getLogger(__name__)

MAKERSPACE_TIMEZONE_SETTING_KEY = 'makerspace.timezone'


def get_default_makerspace_timezone(tz_math: TimeZoneMath | None = None) -> str:
    tz_math = tz_math or TimeZoneMath()
    candidate = config.MAKERSPACE_TIMEZONE
    if candidate and tz_math.is_valid_timezone(candidate):
        return candidate
    if candidate:
        logger.warning('Ignoring invalid MAKERSPACE_TIMEZONE %r', candidate)
    return config.FALLBACK_MAKERSPACE_TIMEZONE


def get_makerspace_timezone(db: Session, tz_math: TimeZoneMath | None = None) -> str:
    tz_math = tz_math or TimeZoneMath()
    setting = db.get(AppSetting, MAKERSPACE_TIMEZONE_SETTING_KEY)

    if setting and tz_math.is_valid_timezone(setting.value):
        return setting.value

    return get_default_makerspace_timezone(tz_math)


def set_makerspace_timezone(db: Session, timezone_name: str, tz_math: TimeZoneMath | None = None) -> AppSetting:
    """Change the zone new availability rules snapshot; existing rules keep theirs."""
    tz_math = tz_math or TimeZoneMath()
    normalized = (timezone_name or '').strip()
    if not tz_math.is_valid_timezone(normalized):
        raise InvalidRangeError('Invalid timezone.')

    setting = db.get(AppSetting, MAKERSPACE_TIMEZONE_SETTING_KEY)
    if setting is None:
        setting = AppSetting(key=MAKERSPACE_TIMEZONE_SETTING_KEY, value=normalized)
        db.add(setting)
    else:
        setting.value = normalized

    db.commit()
    db.refresh(setting)
    logger.info('Makerspace timezone set to %s', normalized)
    return setting
