"""
サイト設定（data/settings.json）の読み込み
"""
import json
import logging
import os

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = 'settings.json'
DEFAULT_SITE_TITLE = 'Scan to Listen'


def get_settings(data_dir):
    """
    サイト設定を取得

    ファイルが存在しない・壊れている場合はデフォルト値を返す。

    Args:
        data_dir (str): settings.json を置くディレクトリ

    Returns:
        dict: {'siteTitle': str, 'hiddenFiles': list, ...}
    """
    settings_path = os.path.join(data_dir, SETTINGS_FILENAME)
    defaults = {'siteTitle': DEFAULT_SITE_TITLE, 'hiddenFiles': []}

    if not os.path.exists(settings_path):
        return defaults

    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            settings = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read settings file {settings_path}: {e}")
        return defaults

    if not isinstance(settings, dict):
        logger.error(f"Settings file {settings_path} is not a JSON object")
        return defaults

    settings.setdefault('siteTitle', DEFAULT_SITE_TITLE)
    if not isinstance(settings.get('hiddenFiles'), list):
        settings['hiddenFiles'] = []
    return settings


def get_hidden_files(data_dir):
    """非公開に設定されたファイル名の集合"""
    return {name for name in get_settings(data_dir)['hiddenFiles'] if isinstance(name, str)}
