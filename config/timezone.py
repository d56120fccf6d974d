"""
タイムゾーン統一管理モジュール

アプリケーション全体で使用するタイムゾーンを統一管理し、
時刻表示の一貫性を保証する。

環境変数TIMEZONEで指定されたIANA Time Zone Database形式の
タイムゾーンを使用する。未指定の場合はAsia/Tokyoがデフォルト。
トークンの内部時刻はepochミリ秒で保持し、表示時のみ変換する。
"""

import os
import pytz
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

TIMEZONE = os.getenv('TIMEZONE', 'Asia/Tokyo')

try:
    APP_TZ = pytz.timezone(TIMEZONE)
    logger.info(f"Application timezone set to: {TIMEZONE}")
except pytz.exceptions.UnknownTimeZoneError:
    logger.error(f"Invalid timezone specified: {TIMEZONE}. Falling back to Asia/Tokyo")
    APP_TZ = pytz.timezone('Asia/Tokyo')
    TIMEZONE = 'Asia/Tokyo'


def get_app_now():
    """
    アプリケーション統一タイムゾーンでの現在時刻を取得

    Returns:
        datetime: タイムゾーン付きの現在時刻
    """
    return datetime.now(APP_TZ)


def get_app_datetime_string():
    """
    ログ・レスポンス用統一時刻文字列を取得

    Returns:
        str: YYYY-MM-DD HH:MM:SS 形式の時刻文字列
    """
    return get_app_now().strftime('%Y-%m-%d %H:%M:%S')


def to_app_timezone(dt):
    """
    任意のタイムゾーンの datetime をアプリタイムゾーンに変換

    Args:
        dt (datetime): 変換対象のdatetime

    Returns:
        datetime: アプリタイムゾーンに変換されたdatetime
    """
    if dt.tzinfo is None:
        logger.warning("naive datetime passed to to_app_timezone, treating as APP_TZ")
        return APP_TZ.localize(dt)
    return dt.astimezone(APP_TZ)


def epoch_ms_to_app_datetime(epoch_ms):
    """
    epochミリ秒をアプリタイムゾーンのdatetimeに変換

    Args:
        epoch_ms (int): epochミリ秒

    Returns:
        datetime: アプリタイムゾーンのdatetime
    """
    utc_dt = datetime.fromtimestamp(epoch_ms / 1000, tz=pytz.utc)
    return to_app_timezone(utc_dt)
